from __future__ import annotations


class SchedulingError(RuntimeError):
    """Base for every failure the orchestrator reports to its callers.

    ``status`` is the machine-readable outcome carried on a dispatch result;
    the message is always human readable and safe to show an operator.
    """

    status = "internal"

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(SchedulingError):
    status = "validation_error"


class NotFound(SchedulingError):
    status = "not_found"


class PolicyDenied(SchedulingError):
    status = "policy_denied"


class AdapterFailure(SchedulingError):
    status = "adapter_failure"

    def __init__(self, adapter: str, message: str, *, details: dict | None = None) -> None:
        super().__init__(f"{adapter}: {message}", details=details)
        self.adapter = adapter


class Conflict(SchedulingError):
    status = "conflict"


class DuplicateEnrollment(Conflict):
    pass


class Internal(SchedulingError):
    status = "internal"
