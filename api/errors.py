"""
Delivery lifecycle errors.

Caller errors (everything except TransientIO) are raised immediately and never
retried here. TransientIO wraps failures of the external marketplace API; the
caller of the data-access layer decides whether to retry.
"""


class DeliveryError(Exception):
    """Base class for all lifecycle errors."""

    status_code = 400

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class NotFound(DeliveryError):
    status_code = 404


class IllegalTransition(DeliveryError):
    status_code = 409


class InvalidValidationCode(IllegalTransition):
    """Handoff code supplied but does not match the one issued for the delivery."""


class InvalidTimeline(DeliveryError):
    status_code = 422


class OverCollection(DeliveryError):
    status_code = 409


class InvalidState(DeliveryError):
    status_code = 409


class Forbidden(DeliveryError):
    status_code = 403


class TransientIO(DeliveryError):
    status_code = 503
