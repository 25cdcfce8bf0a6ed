from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any

import yaml

from codecrew.backlog_generator import extract_yaml_block
from codecrew.config import RebaseConfig
from codecrew.context_gate import ContextGate, truncate
from codecrew.errors import CrewError, PersistenceError, SessionLeakError, ValidationError
from codecrew.models import ExecutionResult, Task, TaskContext, TaskScope
from codecrew.sessions import AgentSessionBroker
from codecrew.specialists.rebaser import RebaserAgent
from codecrew.state.spec_repository import SpecRepository

logger = logging.getLogger(__name__)

SELF_CORRECTION_PATTERNS = [
    re.compile(r"error:", re.IGNORECASE),
    re.compile(r"exception:", re.IGNORECASE),
    re.compile(r"failed to", re.IGNORECASE),
    re.compile(r"cannot find", re.IGNORECASE),
    re.compile(r"undefined is not", re.IGNORECASE),
    re.compile(r"type ?error", re.IGNORECASE),
    re.compile(r"let me (?:fix|correct|retry)", re.IGNORECASE),
    re.compile(r"\bi made a mistake\b", re.IGNORECASE),
]
REVISABLE_FIELDS = ("title", "description", "acceptance", "scope", "context")
SECONDS_PER_HOUR = 3600.0

INDICATOR_CONSTRAINTS = {
    "large_context": "Touch only the files listed for this task.",
    "long_duration": "Limit the change to the acceptance criteria; leave extras for new tasks.",
    "many_commits": "Deliver the change as one focused commit.",
    "high_attempts": "Run the full test suite before finishing.",
}


@dataclass(slots=True)
class RebaseAssessment:
    task_id: str
    indicators: dict[str, bool]
    error_lines: list[str] = field(default_factory=list)

    @property
    def triggered(self) -> list[str]:
        return [name for name, fired in self.indicators.items() if fired]

    @property
    def should_rebase(self) -> bool:
        return bool(self.triggered)

    @property
    def reason(self) -> str:
        if not self.triggered:
            return ""
        return f"Messy run detected: {', '.join(self.triggered)}"


@dataclass(slots=True)
class BatchAnalysis:
    total_tasks: int
    needs_rebase: int
    recommendations: list[tuple[str, str]]


class RebaseEngine:
    """Scores every attempt for messiness and rewrites the task spec instead of the code."""

    def __init__(
        self,
        config: RebaseConfig,
        gate: ContextGate,
        *,
        specs: SpecRepository | None = None,
        broker: AgentSessionBroker | None = None,
        agent: RebaserAgent | None = None,
        timeout_seconds: float = 600.0,
    ) -> None:
        self.config = config
        self.gate = gate
        self.specs = specs
        self.broker = broker
        self.agent = agent
        self.timeout_seconds = timeout_seconds

    def _duration_limit(self, task: Task) -> float:
        if task.scope.estimated_hours > 0:
            return 2 * task.scope.estimated_hours * SECONDS_PER_HOUR
        return self.config.max_duration_seconds

    @staticmethod
    def error_lines(logs: str) -> list[str]:
        lines: list[str] = []
        for raw_line in logs.splitlines():
            line = raw_line.strip()
            if line and any(pattern.search(line) for pattern in SELF_CORRECTION_PATTERNS):
                lines.append(line)
        return lines

    def assess(self, task: Task, result: ExecutionResult) -> RebaseAssessment:
        error_lines = self.error_lines(result.logs)
        indicators = {
            "high_attempts": result.attempts > 1,
            "large_context": result.context_size > self.config.max_context_bytes,
            "long_duration": result.duration_seconds > self._duration_limit(task),
            "error_patterns": bool(error_lines),
            "many_commits": result.commits > self.config.max_commits,
            "failed": not result.success,
        }
        return RebaseAssessment(task_id=task.id, indicators=indicators, error_lines=error_lines)

    def should_rebase(self, task: Task, result: ExecutionResult) -> bool:
        return self.assess(task, result).should_rebase

    def can_regenerate(self, task: Task) -> bool:
        return task.revision < self.config.max_revisions

    def _is_clean(self, task: Task, text: str) -> bool:
        metrics = self.gate.measure(text)
        foreign = metrics.task_ids - {task.id}
        return metrics.debris_count == 0 and not foreign and not metrics.has_full_file

    def improve_spec(self, task: Task, result: ExecutionResult) -> Task:
        assessment = self.assess(task, result)
        budgets = self.gate.budgets
        revised = copy.deepcopy(task)
        revised.attempts = task.attempts + 1
        revised.revision = task.revision + 1
        revised.session_id = None
        if not result.success:
            revised.last_error = f"{result.error_kind or 'failure'} on attempt {result.attempts}"

        context = revised.context or TaskContext()
        constraints = [
            INDICATOR_CONSTRAINTS[name]
            for name in assessment.triggered
            if name in INDICATOR_CONSTRAINTS
        ]
        if not result.success:
            constraints.append(
                f"Previous run ended with {result.error_kind or 'a failure'}; "
                "make the tests pass before finishing."
            )
        gotchas = [
            truncate(f"Seen before: {line}", budgets.gotcha)
            for line in assessment.error_lines
            if self._is_clean(task, line)
        ]
        context.constraints = self._merge(
            constraints, context.constraints, budgets.max_constraints, budgets.constraint
        )
        context.gotchas = self._merge(gotchas, context.gotchas, budgets.max_gotchas, budgets.gotcha)
        revised.context = context
        return self._fit(revised)

    @staticmethod
    def _merge(new: list[str], existing: list[str], limit: int, width: int) -> list[str]:
        merged: list[str] = []
        for item in [*new, *existing]:
            item = truncate(item.strip(), width)
            if item and item not in merged:
                merged.append(item)
        return merged[:limit]

    def _fit(self, task: Task) -> Task:
        while True:
            try:
                self.gate.compress(task)
                return task
            except ValidationError as exc:
                if exc.reason != "too_large" or task.context is None:
                    raise
                if task.context.gotchas:
                    task.context.gotchas.pop()
                elif task.context.constraints:
                    task.context.constraints.pop()
                else:
                    raise

    def _agent_instruction(self, task: Task, assessment: RebaseAssessment, logs: str) -> str:
        current = {name: task.to_dict().get(name) for name in REVISABLE_FIELDS}
        tail = "\n".join(line for line in logs.splitlines()[-40:] if self._is_clean(task, line))
        return (
            f"Task {task.id} needs a better specification.\n"
            f"{assessment.reason}\n\n"
            f"Current specification:\n```yaml\n{yaml.safe_dump(current, sort_keys=False)}```\n\n"
            f"Run log excerpt:\n{tail[-1500:]}"
        )

    def _apply_agent_revision(self, task: Task, payload: Any) -> Task:
        if not isinstance(payload, dict):
            raise ValidationError("Revision must be a mapping.", reason="schema", task_id=task.id)
        revised = copy.deepcopy(task)
        if "title" in payload:
            revised.title = str(payload["title"])
        if "description" in payload:
            revised.description = str(payload["description"])
        if isinstance(payload.get("acceptance"), list) and payload["acceptance"]:
            revised.acceptance = [str(item) for item in payload["acceptance"]]
        if "scope" in payload:
            revised.scope = TaskScope.from_dict(payload["scope"], task_id=task.id)
        if "context" in payload:
            revised.context = TaskContext.from_dict(payload["context"], task_id=task.id)
        revised.attempts = task.attempts + 1
        revised.revision = task.revision + 1
        revised.session_id = None
        for text in [revised.title, revised.description, *revised.acceptance]:
            if not self._is_clean(task, text):
                raise ValidationError(
                    "Revision carries debris or foreign task references.",
                    reason="planning_debris",
                    task_id=task.id,
                )
        self.gate.compress(revised)
        return revised

    async def _regenerate_with_agent(
        self,
        broker: AgentSessionBroker,
        agent: RebaserAgent,
        task: Task,
        result: ExecutionResult,
        assessment: RebaseAssessment,
    ) -> Task:
        handle = await agent.open_session(broker, task_id=task.id)
        try:
            response = await agent.run(
                broker,
                handle,
                self._agent_instruction(task, assessment, result.logs),
                timeout_seconds=self.timeout_seconds,
            )
        except BaseException as exc:
            try:
                await broker.close(handle)
            except Exception as cleanup_error:
                exc.add_note(f"teardown: {cleanup_error}")
            raise
        await broker.close(handle)
        return self._apply_agent_revision(task, extract_yaml_block(response.content))

    async def regenerate(self, task: Task, result: ExecutionResult) -> Task:
        assessment = self.assess(task, result)
        revised: Task | None = None
        broker, agent = self.broker, self.agent
        if self.config.use_agent and broker is not None and agent is not None:
            try:
                revised = await self._regenerate_with_agent(
                    broker, agent, task, result, assessment
                )
            except (PersistenceError, SessionLeakError):
                raise
            except CrewError as exc:
                logger.warning(
                    "Agent revision for %s failed (%s); using rule-based revision.",
                    task.id,
                    exc.describe(),
                )
        if revised is None:
            revised = self.improve_spec(task, result)
        if self.specs is not None:
            if not self.specs.versions(task.id):
                self.specs.save_spec(task, "initial")
            self.specs.save_spec(revised, assessment.reason or "manual rebase")
        logger.info("Task %s regenerated (revision %d).", task.id, revised.revision)
        return revised

    def analyze_batch(self, runs: list[tuple[Task, ExecutionResult]]) -> BatchAnalysis:
        recommendations: list[tuple[str, str]] = []
        for task, result in runs:
            assessment = self.assess(task, result)
            if assessment.should_rebase:
                recommendations.append((task.id, assessment.reason))
        return BatchAnalysis(
            total_tasks=len(runs),
            needs_rebase=len(recommendations),
            recommendations=recommendations,
        )
