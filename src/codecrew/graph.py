from __future__ import annotations

import logging

from codecrew.errors import ValidationError
from codecrew.models import Backlog, Task, TaskStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"ready"}),
    "ready": frozenset({"in_progress"}),
    "in_progress": frozenset({"completed", "failed", "review", "rebasing", "ready"}),
    "failed": frozenset({"rebasing"}),
    "rebasing": frozenset({"ready"}),
    "review": frozenset({"completed", "failed", "ready"}),
    "completed": frozenset(),
}
TERMINAL_STATUSES = frozenset({"completed", "failed", "review"})


def validate_backlog(backlog: Backlog) -> None:
    """Reject duplicate ids, dangling or self dependencies, and cycles."""
    seen: set[str] = set()
    for task in backlog.tasks:
        if task.id in seen:
            raise ValidationError(
                f"Duplicate task id {task.id}.", reason="duplicate_task", task_id=task.id
            )
        seen.add(task.id)

    for task in backlog.tasks:
        for dependency in task.depends_on:
            if dependency == task.id:
                raise ValidationError(
                    f"Task {task.id} depends on itself.",
                    reason="cyclic_dependency",
                    task_id=task.id,
                )
            if dependency not in seen:
                raise ValidationError(
                    f"Task {task.id} depends on unknown task {dependency}.",
                    reason="unknown_dependency",
                    task_id=task.id,
                )

    cycle = find_cycle(backlog.tasks)
    if cycle:
        raise ValidationError(
            f"Circular dependency: {' -> '.join(cycle)}",
            reason="cyclic_dependency",
            task_id=cycle[0],
        )


def find_cycle(tasks: list[Task]) -> list[str] | None:
    graph = {task.id: list(task.depends_on) for task in tasks}
    visited: set[str] = set()
    on_stack: list[str] = []

    def visit(task_id: str) -> list[str] | None:
        if task_id in on_stack:
            return on_stack[on_stack.index(task_id) :] + [task_id]
        if task_id in visited:
            return None
        visited.add(task_id)
        on_stack.append(task_id)
        for dependency in graph.get(task_id, []):
            cycle = visit(dependency)
            if cycle:
                return cycle
        on_stack.pop()
        return None

    for task_id in graph:
        cycle = visit(task_id)
        if cycle:
            return cycle
    return None


class TaskGraph:
    """Dependency-ordered view over a backlog with guarded status transitions."""

    def __init__(self, backlog: Backlog) -> None:
        validate_backlog(backlog)
        self.backlog = backlog

    @property
    def tasks(self) -> list[Task]:
        return self.backlog.tasks

    def get(self, task_id: str) -> Task:
        return self.backlog.require(task_id)

    def dependencies_met(self, task: Task) -> bool:
        return all(self.get(dependency).status == "completed" for dependency in task.depends_on)

    def refresh_ready(self) -> list[Task]:
        promoted: list[Task] = []
        for task in self.tasks:
            if task.status == "pending" and self.dependencies_met(task):
                self.transition(task.id, "ready")
                promoted.append(task)
        return promoted

    def ready_tasks(self, limit: int | None = None) -> list[Task]:
        ready = [
            task for task in self.tasks if task.status == "ready" and self.dependencies_met(task)
        ]
        return ready if limit is None else ready[: max(0, limit)]

    def transition(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        error: str | None = None,
    ) -> Task:
        task = self.get(task_id)
        allowed = ALLOWED_TRANSITIONS.get(task.status, frozenset())
        if status not in allowed:
            raise ValidationError(
                f"Task {task_id} cannot move from {task.status} to {status}.",
                reason="invalid_transition",
                task_id=task_id,
            )
        logger.debug("Task %s: %s -> %s", task_id, task.status, status)
        task.status = status
        if error is not None:
            task.last_error = error
        elif status == "completed":
            task.last_error = None
        if status != "in_progress":
            task.session_id = None
        return task

    def in_progress(self) -> list[Task]:
        return [task for task in self.tasks if task.status == "in_progress"]

    def blocked(self) -> list[Task]:
        """Pending tasks that cannot start this run because a dependency ended badly."""
        dead = {task.id for task in self.tasks if task.status in {"failed", "review"}}
        stuck: list[Task] = []
        changed = True
        while changed:
            changed = False
            for task in self.tasks:
                if task.status != "pending" or task.id in dead:
                    continue
                if any(dependency in dead for dependency in task.depends_on):
                    dead.add(task.id)
                    stuck.append(task)
                    changed = True
        return stuck

    def is_finished(self) -> bool:
        stuck = {task.id for task in self.blocked()}
        return all(
            task.status in TERMINAL_STATUSES or task.id in stuck for task in self.tasks
        )
