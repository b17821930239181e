from __future__ import annotations

from typing import Any


class PushRelayError(Exception):
    """Base error for pushrelay."""


class DeliveryConfigError(PushRelayError):
    """Missing or invalid delivery provider configuration."""


class DuplicateRequestError(PushRelayError):
    """A notification with the same request id already exists."""


class DuplicateJobError(PushRelayError):
    """A job with the same caller-visible id already exists."""


class NotificationNotFoundError(PushRelayError):
    """No notification exists for the given id."""


class NotCancellableError(PushRelayError):
    """Notification is already in a terminal state."""


class NotRetryableError(PushRelayError):
    """Notification has no failed targets eligible for a retry."""


class NoTargetsError(PushRelayError):
    """Target resolution produced no delivery targets."""


class JobPayloadError(PushRelayError):
    """Stored job payload is malformed or has an unknown kind."""


class DeliveryFailedError(PushRelayError):
    """Job execution failed after recording per-target outcomes."""

    def __init__(self, message: str, *, outcome: Any = None) -> None:
        super().__init__(message)
        self.outcome = outcome


class TransientDeliveryError(DeliveryFailedError):
    """Failure that may succeed on a later attempt."""


class PermanentDeliveryError(DeliveryFailedError):
    """Failure that retrying cannot fix."""


class ClaimContendedError(PushRelayError):
    """Every claim attempt lost its race while due work remained."""
