from __future__ import annotations

import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import yaml

from codecrew.errors import PersistenceError
from codecrew.models import Backlog, utcnow_iso


def dump_yaml(payload: object) -> str:
    return yaml.safe_dump(payload, sort_keys=False, allow_unicode=True, width=100)


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


class BacklogStore:
    """Reads and writes the whole backlog file; one writer at a time."""

    def __init__(self, path: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.path = path
        self.lock_file = path.with_name(f".{path.name}.lock")
        self.lock_timeout_seconds = lock_timeout_seconds

    def exists(self) -> bool:
        return self.path.exists()

    @contextmanager
    def _state_lock(self) -> Iterator[None]:
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise PersistenceError(
                        f"Timed out waiting for backlog lock {self.lock_file}.",
                        reason="lock_timeout",
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            self.lock_file.unlink(missing_ok=True)

    def load(self) -> Backlog:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise PersistenceError(
                f"Backlog not found: {self.path}", reason="missing_backlog"
            ) from exc
        except OSError as exc:
            raise PersistenceError(f"Cannot read {self.path}: {exc}", reason="io") from exc
        try:
            payload = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise PersistenceError(
                f"Backlog {self.path} is not valid YAML: {exc}", reason="yaml"
            ) from exc
        return Backlog.from_dict(payload)

    def save(self, backlog: Backlog, *, touch: bool = True) -> None:
        if touch:
            backlog.updated_at = utcnow_iso()
        content = dump_yaml(backlog.to_dict())
        with self._state_lock():
            try:
                atomic_write_text(self.path, content)
            except OSError as exc:
                raise PersistenceError(
                    f"Cannot write backlog {self.path}: {exc}", reason="io"
                ) from exc
