class PaymentsError(Exception):
    pass


class ValidationError(PaymentsError):
    pass


class NotFoundError(PaymentsError):
    pass


class UnauthorizedError(PaymentsError):
    pass


class InvalidStateTransitionError(PaymentsError):
    pass


class StoreError(PaymentsError):
    """A datastore operation failed. Callers may retry; nothing retries internally."""
