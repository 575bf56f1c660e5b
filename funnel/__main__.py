import uvicorn

from funnel.config import settings

uvicorn.run("funnel.main:app", host=settings.app_host, port=settings.app_port, log_config=None)
