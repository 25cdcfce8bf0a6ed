from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Literal

from codecrew.errors import BackendError

SessionStatus = Literal["running", "idle", "error"]


class BackendExecutionError(BackendError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
        session_id: str | None = None,
    ) -> None:
        super().__init__(message, reason="backend_failure", session_id=session_id)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


class AgentBackend(ABC):
    """Session-oriented boundary to an agent runtime."""

    name: str = "agent"

    @abstractmethod
    async def create_session(
        self,
        phase: str,
        *,
        title: str | None = None,
        model: str | None = None,
        working_directory: Path | None = None,
    ) -> str:
        """Create a session and return its id."""

    @abstractmethod
    async def prompt(self, session_id: str, text: str) -> None:
        """Send a prompt; the reply is collected asynchronously."""

    @abstractmethod
    async def get_status(self, session_id: str) -> SessionStatus:
        """Return whether the session is still working, idle, or failed."""

    @abstractmethod
    async def get_last_output(self, session_id: str) -> str:
        """Return the most recent reply produced by the session."""

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Request deletion; absence must be confirmed separately with exists()."""

    @abstractmethod
    async def exists(self, session_id: str) -> bool:
        """Return True while the backend still knows the session."""
