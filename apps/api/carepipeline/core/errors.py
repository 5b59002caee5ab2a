"""Error taxonomy for the automation engine."""


class AutomationError(Exception):
    """Base exception for automation engine errors."""

    pass


class ValidationError(AutomationError):
    """Payload is missing required identifying fields or is malformed."""

    pass


class AuthError(AutomationError):
    """API key is missing, unknown or disabled."""

    pass


class NotFoundError(AutomationError):
    """Referenced subject, sequence or enrollment does not exist."""

    pass


class DuplicateConflict(AutomationError):
    """Subject already has an active enrollment in the sequence."""

    pass


class DeliveryError(AutomationError):
    """Messaging provider failed to deliver (network, auth, rate limit)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429


class PersistenceError(AutomationError):
    """Store write failed after retries."""

    pass


class InvalidStateError(AutomationError):
    """Transition not allowed from the record's current state (e.g. stopping a finished enrollment)."""

    pass
