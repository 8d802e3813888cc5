"""Exception hierarchy shared by the spool store, the worker and the transports."""

from __future__ import annotations


class SpoolError(Exception):
    """Base class for every error raised by the mail spool."""


class MalformedJobError(SpoolError):
    """Raised when a persisted job file cannot be parsed.

    The worker moves such a job straight to ``failed`` without attempting
    delivery.
    """

    def __init__(self, name: str, reason: str):
        super().__init__(f"Malformed job {name}: {reason}")
        self.name = name
        self.reason = reason


class SpoolFilesystemError(SpoolError):
    """Raised when a listing, move or delete inside the spool root fails."""


class DeliveryError(SpoolError):
    """Base class for classified mail transport failures."""

    permanent = False

    def __init__(self, detail: str, *, smtp_code: int | None = None):
        super().__init__(detail)
        self.detail = detail
        self.smtp_code = smtp_code

    @property
    def kind(self) -> str:
        return "permanent" if self.permanent else "transient"


class PermanentDeliveryError(DeliveryError):
    """Non-retryable failure: bad address, missing field or configuration."""

    permanent = True


class TransientDeliveryError(DeliveryError):
    """Retryable failure: network, timeout or a temporary server refusal."""
