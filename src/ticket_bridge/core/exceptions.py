from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """Base error for the bridging engine."""

    recoverable = True
    severity = "error"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message


class TransientError(BridgeError):
    """Errors that may succeed on retry (network blips, rate limits)."""

    recoverable = True
    severity = "warning"


class PermanentError(BridgeError):
    """Errors that will not succeed on retry (bad input, missing access)."""

    recoverable = False
    severity = "error"


class TransportError(BridgeError):
    """A platform call (send, create channel, download) failed."""

    def __init__(
        self,
        message: str,
        *,
        platform: Optional[str] = None,
        retry_after: Optional[float] = None,
        user_message: Optional[str] = None,
    ) -> None:
        if user_message is None:
            user_message = "Delivery failed on the remote platform."
        super().__init__(message, user_message=user_message)
        self.platform = platform
        self.retry_after = retry_after


class TransientTransportError(TransportError, TransientError):
    """Retryable transport failure."""


class PermanentTransportError(TransportError, PermanentError):
    """Non-retryable transport failure."""

    recoverable = PermanentError.recoverable
    severity = PermanentError.severity


class NotFoundError(BridgeError):
    """A binding, instance or ticket does not exist."""


class DegradableMediaError(BridgeError):
    """A media send failed in a way a lower fallback tier may still satisfy."""

    def __init__(
        self,
        message: str,
        *,
        tier: Optional[str] = None,
        user_message: Optional[str] = None,
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.tier = tier


class ConversionError(DegradableMediaError):
    """Re-encoding media failed."""


class RegistrationError(PermanentError):
    """An instance id or storage root cannot be registered."""


class PersistenceError(BridgeError):
    """Writing a store to disk failed; in-memory state remains authoritative."""

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class CascadeError(BridgeError):
    """One step of a rename cascade failed."""

    def __init__(self, message: str, *, step: str) -> None:
        super().__init__(message)
        self.step = step


__all__ = [
    "BridgeError",
    "CascadeError",
    "ConversionError",
    "DegradableMediaError",
    "NotFoundError",
    "PermanentError",
    "PermanentTransportError",
    "PersistenceError",
    "RegistrationError",
    "TransientError",
    "TransientTransportError",
    "TransportError",
]
