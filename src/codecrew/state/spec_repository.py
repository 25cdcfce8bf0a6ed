from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from codecrew.errors import PersistenceError
from codecrew.models import Backlog, Task, utcnow_iso
from codecrew.state.backlog_store import atomic_write_text, dump_yaml

VERSION_FILE_PATTERN = re.compile(r"^v(\d+)\.yaml$")
BACKLOG_KEY = "_backlog"


@dataclass(slots=True)
class SpecVersion:
    key: str
    version: int
    content: dict[str, Any]
    timestamp: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "content": self.content,
            "timestamp": self.timestamp,
            "reason": self.reason,
        }


class SpecRepository:
    """Keeps every revision of every task spec as specs/<task>/v<N>.yaml."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _dir(self, key: str) -> Path:
        return self.root / re.sub(r"[^A-Za-z0-9._-]+", "-", key)

    def versions(self, key: str) -> list[int]:
        directory = self._dir(key)
        if not directory.is_dir():
            return []
        found: list[int] = []
        for path in directory.iterdir():
            match = VERSION_FILE_PATTERN.match(path.name)
            if match:
                found.append(int(match.group(1)))
        return sorted(found)

    def _save(self, key: str, content: dict[str, Any], reason: str) -> SpecVersion:
        existing = self.versions(key)
        entry = SpecVersion(
            key=key,
            version=(existing[-1] + 1) if existing else 1,
            content=content,
            timestamp=utcnow_iso(),
            reason=reason,
        )
        path = self._dir(key) / f"v{entry.version}.yaml"
        try:
            atomic_write_text(path, dump_yaml(entry.to_dict()))
        except OSError as exc:
            raise PersistenceError(f"Cannot write {path}: {exc}", reason="io") from exc
        return entry

    def save_spec(self, task: Task, reason: str) -> SpecVersion:
        return self._save(task.id, task.to_dict(), reason)

    def snapshot_backlog(self, backlog: Backlog, reason: str) -> SpecVersion:
        return self._save(BACKLOG_KEY, backlog.to_dict(), reason)

    def load_spec(self, key: str, version: int) -> SpecVersion:
        path = self._dir(key) / f"v{version}.yaml"
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise PersistenceError(
                f"No version {version} stored for {key}.", reason="missing_version", task_id=key
            ) from exc
        except (OSError, yaml.YAMLError) as exc:
            raise PersistenceError(f"Cannot read {path}: {exc}", reason="io") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("content"), dict):
            raise PersistenceError(f"Malformed spec version file {path}.", reason="schema")
        return SpecVersion(
            key=key,
            version=int(payload.get("version", version)),
            content=payload["content"],
            timestamp=str(payload.get("timestamp", "")),
            reason=str(payload.get("reason", "")),
        )

    def load_latest(self, key: str) -> SpecVersion | None:
        existing = self.versions(key)
        if not existing:
            return None
        return self.load_spec(key, existing[-1])

    def load_task(self, key: str, version: int | None = None) -> Task:
        entry = self.load_latest(key) if version is None else self.load_spec(key, version)
        if entry is None:
            raise PersistenceError(f"No stored spec for {key}.", reason="missing_version")
        return Task.from_dict(entry.content)

    def history(self, key: str) -> list[SpecVersion]:
        return [self.load_spec(key, version) for version in self.versions(key)]

    def compare_versions(self, key: str, left: int, right: int) -> dict[str, tuple[Any, Any]]:
        before = self.load_spec(key, left).content
        after = self.load_spec(key, right).content
        changes: dict[str, tuple[Any, Any]] = {}
        for field_name in sorted(set(before) | set(after)):
            if before.get(field_name) != after.get(field_name):
                changes[field_name] = (before.get(field_name), after.get(field_name))
        return changes
