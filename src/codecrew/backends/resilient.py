from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from codecrew.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendTimeoutError,
    SessionStatus,
)

BackendEventHook = Callable[[dict[str, Any]], None]
T = TypeVar("T")


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_seconds: float = 1.0
    timeout_seconds: float = 90.0


class ResilientBackend(AgentBackend):
    """Wraps a backend so every call is bounded by a timeout and retried with backoff."""

    def __init__(
        self,
        backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.backend = backend
        self.name = backend.name
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _bounded(self, call_name: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(call(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend {call_name} timed out after {self.retry_policy.timeout_seconds:.1f}s",
                backend=self.name,
                retriable=True,
            ) from exc

    async def _execute_attempts(
        self,
        call_name: str,
        call: Callable[[], Awaitable[T]],
        *,
        session_id: str | None = None,
    ) -> T:
        errors: list[str] = []
        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "backend_retry",
                        "backend": self.name,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "call": call_name,
                        "session_id": session_id,
                    }
                )
                await asyncio.sleep(delay)
            try:
                return await self._bounded(call_name, call)
            except BackendExecutionError as exc:
                errors.append(f"{self.name}[{attempt}]: {exc}")
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "backend": self.name,
                        "attempt": attempt,
                        "call": call_name,
                        "error": str(exc),
                        "retriable": exc.retriable,
                        "session_id": session_id,
                    }
                )
                if not exc.retriable:
                    break
            except OSError as exc:
                errors.append(f"{self.name}[{attempt}]: {exc}")
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "backend": self.name,
                        "attempt": attempt,
                        "call": call_name,
                        "error": str(exc),
                        "retriable": True,
                        "session_id": session_id,
                    }
                )

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All backend attempts failed for {call_name}. {summary}",
            backend=self.name,
            retriable=False,
            session_id=session_id,
        )

    async def create_session(
        self,
        phase: str,
        *,
        title: str | None = None,
        model: str | None = None,
        working_directory: Path | None = None,
    ) -> str:
        return await self._execute_attempts(
            "create_session",
            lambda: self.backend.create_session(
                phase, title=title, model=model, working_directory=working_directory
            ),
        )

    async def prompt(self, session_id: str, text: str) -> None:
        await self._execute_attempts(
            "prompt", lambda: self.backend.prompt(session_id, text), session_id=session_id
        )

    async def get_status(self, session_id: str) -> SessionStatus:
        return await self._execute_attempts(
            "get_status", lambda: self.backend.get_status(session_id), session_id=session_id
        )

    async def get_last_output(self, session_id: str) -> str:
        return await self._execute_attempts(
            "get_last_output",
            lambda: self.backend.get_last_output(session_id),
            session_id=session_id,
        )

    async def delete_session(self, session_id: str) -> None:
        await self._execute_attempts(
            "delete_session",
            lambda: self.backend.delete_session(session_id),
            session_id=session_id,
        )

    async def exists(self, session_id: str) -> bool:
        return await self._execute_attempts(
            "exists", lambda: self.backend.exists(session_id), session_id=session_id
        )
