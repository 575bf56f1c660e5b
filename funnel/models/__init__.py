from funnel.models.enums import CircuitState, FulfillmentType, LifecycleGroup, PaymentStatus, ResultCode

__all__ = ["CircuitState", "FulfillmentType", "LifecycleGroup", "PaymentStatus", "ResultCode"]
