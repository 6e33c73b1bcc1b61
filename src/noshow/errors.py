"""Exception hierarchy."""

from __future__ import annotations

__all__ = [
    "AppointmentNotFoundError",
    "InterventionNotFoundError",
    "NoShowError",
    "RecordStoreError",
    "RuleConfigError",
]


class NoShowError(Exception):
    """Base class for errors raised by this package."""


class RecordStoreError(NoShowError):
    """The record store failed after exhausting its retry policy.

    Surfaced to the caller of the evaluation entry point: cooldown
    correctness depends on the store, so the request cannot continue.
    """

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"record store operation '{operation}' failed{detail}")


class RuleConfigError(NoShowError):
    """An intervention rule file could not be parsed or validated."""


class AppointmentNotFoundError(NoShowError, LookupError):
    """The record store has no appointment with the requested id."""


class InterventionNotFoundError(NoShowError, LookupError):
    """No executed intervention (or action) matches the requested id."""
