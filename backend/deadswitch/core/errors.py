class ConditionConfigError(ValueError):
    """Condition settings cannot produce a deadline (rejected at arm/edit time)."""


class ConditionNotFound(LookupError):
    pass


class ConditionForbidden(PermissionError):
    """Caller does not own the message the condition belongs to."""
