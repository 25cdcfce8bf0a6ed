from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from codecrew.backends.base import AgentBackend
from codecrew.errors import BackendError, CrewError, CrewTimeoutError, SessionLeakError
from codecrew.models import Phase, SessionHandle

logger = logging.getLogger(__name__)


class AgentSessionBroker:
    """Owns every backend session from creation until its absence is confirmed."""

    def __init__(
        self,
        backend: AgentBackend,
        *,
        poll_interval_seconds: float = 2.0,
        confirm_attempts: int = 3,
        confirm_delay_seconds: float = 0.5,
    ) -> None:
        self.backend = backend
        self.poll_interval_seconds = poll_interval_seconds
        self.confirm_attempts = max(1, confirm_attempts)
        self.confirm_delay_seconds = confirm_delay_seconds
        self._handles: dict[str, SessionHandle] = {}
        self._transcripts: dict[str, list[str]] = {}

    @property
    def open_handles(self) -> list[SessionHandle]:
        return list(self._handles.values())

    async def open(
        self,
        phase: Phase,
        *,
        task_id: str | None = None,
        title: str | None = None,
        model: str | None = None,
        working_directory: Path | None = None,
    ) -> SessionHandle:
        session_id = await self.backend.create_session(
            phase, title=title, model=model, working_directory=working_directory
        )
        handle = SessionHandle(session_id=session_id, phase=phase, task_id=task_id)
        self._handles[session_id] = handle
        self._transcripts[session_id] = []
        logger.debug("Opened %s session %s for %s", phase, session_id, task_id or "planning")
        return handle

    async def send(self, handle: SessionHandle, text: str) -> None:
        self._transcripts.setdefault(handle.session_id, []).append(text)
        await self.backend.prompt(handle.session_id, text)
        handle.state = "active"

    async def wait_for_output(self, handle: SessionHandle, timeout_seconds: float) -> str:
        deadline = time.monotonic() + timeout_seconds
        while True:
            status = await self.backend.get_status(handle.session_id)
            if status == "idle":
                break
            if status == "error":
                detail = await self.backend.get_last_output(handle.session_id)
                raise BackendError(
                    f"Session reported an error: {detail or 'no detail'}",
                    reason="session_error",
                    task_id=handle.task_id,
                    session_id=handle.session_id,
                )
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise CrewTimeoutError(
                    f"Session did not finish within {timeout_seconds:.1f}s.",
                    reason="session_poll",
                    task_id=handle.task_id,
                    session_id=handle.session_id,
                )
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

        output = await self.backend.get_last_output(handle.session_id)
        self._transcripts.setdefault(handle.session_id, []).append(output)
        return output

    def transcript(self, handle: SessionHandle) -> str:
        return "\n\n".join(self._transcripts.get(handle.session_id, []))

    async def close(self, handle: SessionHandle) -> None:
        handle.state = "deletion_requested"
        delete_error: BackendError | None = None
        try:
            await self.backend.delete_session(handle.session_id)
        except BackendError as exc:
            delete_error = exc
            logger.warning("Deleting session %s failed: %s", handle.session_id, exc)

        for attempt in range(self.confirm_attempts):
            if not await self.backend.exists(handle.session_id):
                handle.state = "confirmed_absent"
                self._handles.pop(handle.session_id, None)
                self._transcripts.pop(handle.session_id, None)
                logger.debug("Session %s confirmed absent", handle.session_id)
                return
            if attempt + 1 < self.confirm_attempts:
                await asyncio.sleep(self.confirm_delay_seconds)

        leak = SessionLeakError(
            f"Session still exists after deletion ({handle.phase} phase).",
            session_id=handle.session_id,
            task_id=handle.task_id,
        )
        if delete_error is not None:
            raise leak from delete_error
        raise leak

    async def close_all(self) -> None:
        errors: list[CrewError] = []
        for handle in self.open_handles:
            try:
                await self.close(handle)
            except CrewError as exc:
                errors.append(exc)
        if errors:
            first = errors[0]
            for extra in errors[1:]:
                first.add_note(extra.describe())
            raise first

    async def reclaim(
        self,
        session_id: str,
        phase: Phase,
        *,
        task_id: str | None = None,
    ) -> None:
        """Tear down a session left behind by an interrupted run."""
        handle = SessionHandle(
            session_id=session_id, phase=phase, task_id=task_id, state="active"
        )
        self._handles[session_id] = handle
        await self.close(handle)
