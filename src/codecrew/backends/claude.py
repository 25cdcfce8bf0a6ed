from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from codecrew.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    SessionStatus,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _ClaudeSession:
    session_id: str
    phase: str
    title: str | None = None
    model: str | None = None
    working_directory: Path | None = None
    turns: int = 0
    process: asyncio.subprocess.Process | None = None
    reader: asyncio.Task[None] | None = None
    chunks: list[str] = field(default_factory=list)
    last_output: str = ""
    error: str | None = None


class ClaudeCodeBackend(AgentBackend):
    """Runs each session turn as a `claude -p` subprocess and keeps sessions locally."""

    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self._sessions: dict[str, _ClaudeSession] = {}

    def build_command(self, session: _ClaudeSession, text: str) -> list[str]:
        command = [self.binary, "-p", text, "--output-format", "stream-json", "--verbose"]
        if session.turns == 0:
            command.extend(["--session-id", session.session_id])
        else:
            command.extend(["--resume", session.session_id])
        if session.model:
            command.extend(["--model", session.model])
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        if event.get("type") == "result" and isinstance(event.get("result"), str):
            return ""
        message = event.get("message")
        if isinstance(message, dict):
            event = message
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def _session(self, session_id: str) -> _ClaudeSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise BackendExecutionError(
                f"Unknown session: {session_id}",
                backend=self.name,
                retriable=False,
                session_id=session_id,
            )
        return session

    async def create_session(
        self,
        phase: str,
        *,
        title: str | None = None,
        model: str | None = None,
        working_directory: Path | None = None,
    ) -> str:
        session_id = str(uuid4())
        self._sessions[session_id] = _ClaudeSession(
            session_id=session_id,
            phase=phase,
            title=title,
            model=model,
            working_directory=working_directory or self.working_directory,
        )
        logger.debug("Created %s session %s (%s)", phase, session_id, title or "untitled")
        return session_id

    async def prompt(self, session_id: str, text: str) -> None:
        session = self._session(session_id)
        if session.reader is not None and not session.reader.done():
            raise BackendExecutionError(
                f"Session {session_id} is still processing a prompt.",
                backend=self.name,
                retriable=True,
                session_id=session_id,
            )
        command = self.build_command(session, text)
        cwd = session.working_directory
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
                session_id=session_id,
            ) from exc

        session.turns += 1
        session.process = process
        session.chunks = []
        session.error = None
        session.reader = asyncio.create_task(self._consume(session, process))

    async def _consume(
        self,
        session: _ClaudeSession,
        process: asyncio.subprocess.Process,
    ) -> None:
        if process.stdout is None:
            session.error = "Claude backend did not expose stdout."
            return

        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                session.chunks.append(line)
                continue

            if isinstance(event, dict):
                content = self._extract_content(event)
                if content:
                    session.chunks.append(content)

        if parse_buffer:
            session.chunks.append(parse_buffer)

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        session.last_output = "".join(session.chunks).strip()
        if return_code != 0:
            session.error = f"Claude backend failed with exit code {return_code}: {stderr_output}"

    async def get_status(self, session_id: str) -> SessionStatus:
        session = self._session(session_id)
        if session.reader is not None and not session.reader.done():
            return "running"
        if session.error:
            return "error"
        return "idle"

    async def get_last_output(self, session_id: str) -> str:
        session = self._session(session_id)
        if session.error:
            return session.error
        return session.last_output

    async def delete_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        process = session.process
        if process is not None and process.returncode is None:
            process.kill()
            await process.wait()
        if session.reader is not None and not session.reader.done():
            session.reader.cancel()
            try:
                await session.reader
            except asyncio.CancelledError:
                logger.debug("Stopped output reader for session %s", session_id)

    async def exists(self, session_id: str) -> bool:
        return session_id in self._sessions
