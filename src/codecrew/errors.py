from __future__ import annotations


class CrewError(RuntimeError):
    """Base class for every engine error surfaced to callers."""

    kind = "CrewError"

    def __init__(
        self,
        message: str,
        *,
        reason: str | None = None,
        task_id: str | None = None,
        session_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.task_id = task_id
        self.session_id = session_id

    def describe(self) -> str:
        label = self.kind if not self.reason else f"{self.kind}[{self.reason}]"
        scope: list[str] = []
        if self.task_id:
            scope.append(f"task={self.task_id}")
        if self.session_id:
            scope.append(f"session={self.session_id}")
        suffix = f" ({', '.join(scope)})" if scope else ""
        return f"{label}{suffix}: {self}"


class ValidationError(CrewError):
    """Raised when a schema or graph invariant is violated. Never retried."""

    kind = "ValidationError"


class InstrumentationError(CrewError):
    """Raised when verification tooling fails its own smoke checks."""

    kind = "InstrumentationError"

    def __init__(self, message: str, *, broken_checks: list[str] | None = None) -> None:
        super().__init__(message, reason="instrumentation_broken")
        self.broken_checks = list(broken_checks or [])


class CrewTimeoutError(CrewError):
    """Raised when session polling or a workspace operation exceeds its budget."""

    kind = "TimeoutError"


class ContaminationError(CrewError):
    """Raised when a context or transcript breaks a hygiene rule."""

    kind = "ContaminationError"


class SessionLeakError(ContaminationError):
    """Raised when a deleted session is still reported by the backend."""

    def __init__(self, message: str, *, session_id: str, task_id: str | None = None) -> None:
        super().__init__(message, reason="session_leak", task_id=task_id, session_id=session_id)


class BackendError(CrewError):
    """Raised when the agent backend cannot serve a request."""

    kind = "BackendError"


class PersistenceError(CrewError):
    """Raised when durable state cannot be read or written."""

    kind = "PersistenceError"


class RunCancelledError(CrewError):
    """Raised when a run-level cancellation signal stops orchestration."""

    kind = "Cancelled"


class WorkspaceError(CrewError):
    """Raised when a task workspace cannot be created, merged, or removed."""

    kind = "WorkspaceError"


class VerificationError(CrewError):
    """Raised when the post-attempt verification command fails in a workspace."""

    kind = "VerificationError"
