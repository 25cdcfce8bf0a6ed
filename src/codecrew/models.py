from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Literal

from codecrew.errors import ValidationError

TaskStatus = Literal[
    "pending",
    "ready",
    "in_progress",
    "completed",
    "failed",
    "review",
    "rebasing",
]
Phase = Literal["planning", "implementation", "review", "rebase"]
SessionLifecycle = Literal["created", "active", "deletion_requested", "confirmed_absent"]

TASK_STATUSES: tuple[str, ...] = (
    "pending",
    "ready",
    "in_progress",
    "completed",
    "failed",
    "review",
    "rebasing",
)
PHASES: tuple[str, ...] = ("planning", "implementation", "review", "rebase")
BACKLOG_SCHEMA_VERSION = "1.0"


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _where(task_id: str | None) -> str:
    return f"task {task_id}" if task_id else "task"


def _as_text(value: Any, key: str, where: str) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            f"{where}: field '{key}' must be a non-empty string.", reason="schema"
        )
    return value


def _as_text_list(value: Any, key: str, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{where}: field '{key}' must be a list.", reason="schema")
    items: list[str] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (str, int, float)):
            raise ValidationError(
                f"{where}: field '{key}' must contain only strings.", reason="schema"
            )
        items.append(str(item))
    return items


def _as_count(value: Any, key: str, where: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(
            f"{where}: field '{key}' must be a non-negative integer.", reason="schema"
        )
    return value


@dataclass(slots=True)
class TaskScope:
    files_hint: list[str] = field(default_factory=list)
    estimated_hours: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"files_hint": list(self.files_hint), "estimated_hours": self.estimated_hours}

    @classmethod
    def from_dict(cls, data: Any, *, task_id: str | None = None) -> TaskScope:
        where = _where(task_id)
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError(f"{where}: field 'scope' must be a mapping.", reason="schema")
        hours = data.get("estimated_hours", 0)
        if isinstance(hours, bool) or not isinstance(hours, (int, float)) or hours < 0:
            raise ValidationError(
                f"{where}: field 'scope.estimated_hours' must be a non-negative number.",
                reason="schema",
            )
        return cls(
            files_hint=_as_text_list(data.get("files_hint"), "scope.files_hint", where),
            estimated_hours=hours,
        )


@dataclass(slots=True)
class TaskContext:
    constraints: list[str] = field(default_factory=list)
    patterns: list[str] = field(default_factory=list)
    gotchas: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.constraints or self.patterns or self.gotchas)

    def to_dict(self) -> dict[str, Any]:
        return {
            "constraints": list(self.constraints),
            "patterns": list(self.patterns),
            "gotchas": list(self.gotchas),
        }

    @classmethod
    def from_dict(cls, data: Any, *, task_id: str | None = None) -> TaskContext | None:
        where = _where(task_id)
        if data is None:
            return None
        if not isinstance(data, dict):
            raise ValidationError(f"{where}: field 'context' must be a mapping.", reason="schema")
        return cls(
            constraints=_as_text_list(data.get("constraints"), "context.constraints", where),
            patterns=_as_text_list(data.get("patterns"), "context.patterns", where),
            gotchas=_as_text_list(data.get("gotchas"), "context.gotchas", where),
        )


@dataclass(slots=True)
class Task:
    id: str
    title: str
    description: str
    acceptance: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    scope: TaskScope = field(default_factory=TaskScope)
    context: TaskContext | None = None
    status: TaskStatus = "pending"
    attempts: int = 0
    last_error: str | None = None
    revision: int = 0
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "depends_on": list(self.depends_on),
            "acceptance": list(self.acceptance),
            "attempts": self.attempts,
            "revision": self.revision,
            "scope": self.scope.to_dict(),
        }
        if self.context is not None:
            payload["context"] = self.context.to_dict()
        if self.last_error is not None:
            payload["last_error"] = self.last_error
        if self.session_id is not None:
            payload["session_id"] = self.session_id
        return payload

    @classmethod
    def from_dict(cls, data: Any) -> Task:
        if not isinstance(data, dict):
            raise ValidationError("Backlog tasks must be mappings.", reason="schema")
        task_id = _as_text(data.get("id"), "id", "task")
        where = _where(task_id)
        status = data.get("status", "pending")
        if status not in TASK_STATUSES:
            raise ValidationError(
                f"{where}: unknown status '{status}'.", reason="schema", task_id=task_id
            )
        last_error = data.get("last_error")
        session_id = data.get("session_id")
        return cls(
            id=task_id,
            title=_as_text(data.get("title"), "title", where),
            description=_as_text(data.get("description"), "description", where),
            acceptance=_as_text_list(data.get("acceptance"), "acceptance", where),
            depends_on=_as_text_list(data.get("depends_on"), "depends_on", where),
            scope=TaskScope.from_dict(data.get("scope"), task_id=task_id),
            context=TaskContext.from_dict(data.get("context"), task_id=task_id),
            status=status,
            attempts=_as_count(data.get("attempts"), "attempts", where),
            last_error=None if last_error is None else str(last_error),
            revision=_as_count(data.get("revision"), "revision", where),
            session_id=None if session_id is None else str(session_id),
        )


@dataclass(slots=True)
class Backlog:
    track_id: str
    tasks: list[Task] = field(default_factory=list)
    version: str = BACKLOG_SCHEMA_VERSION
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def get(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise ValidationError(
                f"Task {task_id} is not part of backlog {self.track_id}.",
                reason="unknown_task",
                task_id=task_id,
            )
        return task

    def replace(self, task: Task) -> None:
        for index, existing in enumerate(self.tasks):
            if existing.id == task.id:
                self.tasks[index] = task
                return
        raise ValidationError(
            f"Task {task.id} is not part of backlog {self.track_id}.",
            reason="unknown_task",
            task_id=task.id,
        )

    def stats(self) -> dict[str, int]:
        counts = {status: 0 for status in TASK_STATUSES}
        for task in self.tasks:
            counts[task.status] += 1
        counts["total"] = len(self.tasks)
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "track_id": self.track_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: Any) -> Backlog:
        if not isinstance(data, dict):
            raise ValidationError("Backlog document must be a mapping.", reason="schema")
        tasks_payload = data.get("tasks")
        if not isinstance(tasks_payload, list):
            raise ValidationError("Backlog field 'tasks' must be a list.", reason="schema")
        return cls(
            version=_as_text(data.get("version", BACKLOG_SCHEMA_VERSION), "version", "backlog"),
            track_id=_as_text(data.get("track_id"), "track_id", "backlog"),
            created_at=_as_text(data.get("created_at") or utcnow_iso(), "created_at", "backlog"),
            updated_at=_as_text(data.get("updated_at") or utcnow_iso(), "updated_at", "backlog"),
            tasks=[Task.from_dict(item) for item in tasks_payload],
        )


@dataclass(slots=True, frozen=True)
class ContextMetrics:
    size_bytes: int
    unique_files: int
    task_ids: frozenset[str]
    debris_count: int
    has_full_file: bool
    debris_phrases: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ContextBundle:
    task_id: str
    payload: bytes
    max_bytes: int

    def __post_init__(self) -> None:
        if len(self.payload) > self.max_bytes:
            raise ValidationError(
                f"Task {self.task_id} context too large: {len(self.payload)} bytes "
                f"(max: {self.max_bytes}). Reduce description, acceptance criteria, or patterns.",
                reason="too_large",
                task_id=self.task_id,
            )

    @property
    def size_bytes(self) -> int:
        return len(self.payload)

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8")


@dataclass(slots=True)
class SessionHandle:
    session_id: str
    phase: Phase
    disposable: bool = True
    task_id: str | None = None
    state: SessionLifecycle = "created"
    opened_at: float = field(default_factory=time.monotonic)


@dataclass(slots=True)
class Workspace:
    task_id: str
    attempt: int
    path: Path
    branch: str | None = None
    base_ref: str | None = None


@dataclass(slots=True)
class ExecutionResult:
    task_id: str
    attempts: int
    context_size: int
    duration_seconds: float
    commits: int
    logs: str
    success: bool
    error_kind: str | None = None
    merge_conflict: bool = False
