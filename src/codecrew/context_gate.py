from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from codecrew.config import ContextConfig
from codecrew.errors import ContaminationError, ValidationError
from codecrew.models import ContextBundle, ContextMetrics, Task

logger = logging.getLogger(__name__)

ELLIPSIS = "..."
PATTERN_FORMAT = re.compile(
    r"^(?P<path>[^\s:]+):(?P<start>\d+)-(?P<end>\d+) - (?P<description>\S.*)$"
)
FILE_PATH_PATTERN = re.compile(r"(?:src|lib|test|tests)/[\w/\-.]+\.\w+")
FILE_MARKER_PATTERN = re.compile(r"^(?://|#)\s*[Ff]ile:\s")
POLICED_PHASES = {"implementation", "review"}


@dataclass(slots=True, frozen=True)
class FieldBudgets:
    title: int = 100
    description: int = 600
    acceptance: int = 400
    constraint: int = 100
    pattern: int = 120
    gotcha: int = 100
    max_constraints: int = 5
    max_patterns: int = 5
    max_gotchas: int = 3
    max_files: int = 10


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    if max_chars <= len(ELLIPSIS):
        return ELLIPSIS[:max_chars]
    return text[: max_chars - len(ELLIPSIS)] + ELLIPSIS


def fit_longest_first(items: list[str], budget: int) -> list[str]:
    """Trim the longest entries first until the combined length fits the budget."""
    lengths = [len(item) for item in items]
    if sum(lengths) <= budget:
        return list(items)
    floor = len(ELLIPSIS) + 1
    cap = max(lengths)
    while cap > floor and sum(min(length, cap) for length in lengths) > budget:
        cap -= 1
    return [truncate(item, cap) for item in items]


class ContextGate:
    def __init__(self, config: ContextConfig, budgets: FieldBudgets | None = None) -> None:
        self.config = config
        self.budgets = budgets or FieldBudgets()
        self._task_id_pattern = re.compile(config.task_id_pattern)
        self._debris = [phrase for phrase in config.debris_phrases if phrase.strip()]

    def compress(self, task: Task) -> ContextBundle:
        budgets = self.budgets
        sections: list[str] = [
            f"# Task {task.id}: {truncate(task.title, budgets.title)}",
            "",
            "## Specification",
            truncate(task.description, budgets.description),
            "",
            "## Acceptance Criteria",
        ]
        for criterion in fit_longest_first(task.acceptance, budgets.acceptance):
            sections.append(f"- {criterion}")
        sections.append("")

        files = self._validated_files(task)
        if files:
            sections.append("## Files")
            sections.extend(f"- {path}" for path in files)
            sections.append("")

        context = task.context
        if context is not None and not context.is_empty():
            self._check_count(task, "constraints", context.constraints, budgets.max_constraints)
            self._check_count(task, "patterns", context.patterns, budgets.max_patterns)
            self._check_count(task, "gotchas", context.gotchas, budgets.max_gotchas)
            for pattern in context.patterns:
                if not self._valid_pattern(pattern):
                    raise ValidationError(
                        f"Task {task.id} pattern does not match "
                        f"'path:startLine-endLine - description': {pattern!r}",
                        reason="invalid_pattern_format",
                        task_id=task.id,
                    )
            self._append_items(sections, "Constraints", context.constraints, budgets.constraint)
            self._append_items(sections, "Patterns", context.patterns, budgets.pattern)
            self._append_items(sections, "Gotchas", context.gotchas, budgets.gotcha)

        payload = "\n".join(sections).encode("utf-8")
        return ContextBundle(task_id=task.id, payload=payload, max_bytes=self.config.max_bytes)

    def measure(self, raw_text: str) -> ContextMetrics:
        debris = tuple(self._find_debris(raw_text))
        return ContextMetrics(
            size_bytes=len(raw_text.encode("utf-8")),
            unique_files=len(set(FILE_PATH_PATTERN.findall(raw_text))),
            task_ids=frozenset(self._task_id_pattern.findall(raw_text)),
            debris_count=len(debris),
            has_full_file=self._detect_full_file(raw_text),
            debris_phrases=debris,
        )

    def verify(
        self,
        raw_text: str,
        phase: str,
        *,
        task_id: str | None = None,
        session_id: str | None = None,
    ) -> ContextMetrics:
        metrics = self.measure(raw_text)
        if phase not in POLICED_PHASES:
            return metrics

        limit = self.config.transcript_max_bytes
        if metrics.size_bytes > limit:
            raise ContaminationError(
                f"Context too large: {metrics.size_bytes} bytes (max: {limit}).",
                reason="too_large",
                task_id=task_id,
                session_id=session_id,
            )
        if metrics.debris_count > 0:
            examples = '", "'.join(metrics.debris_phrases[:2])
            raise ContaminationError(
                f"Planning debris detected ({metrics.debris_count} phrases): \"{examples}\"",
                reason="planning_debris",
                task_id=task_id,
                session_id=session_id,
            )
        if len(metrics.task_ids) > 1:
            raise ContaminationError(
                "Cross-task contamination detected: "
                f"{', '.join(sorted(metrics.task_ids))}. Each session must carry one task.",
                reason="cross_task_contamination",
                task_id=task_id,
                session_id=session_id,
            )
        if metrics.has_full_file:
            raise ContaminationError(
                "Full file contents detected. Use file paths and line ranges only.",
                reason="full_file",
                task_id=task_id,
                session_id=session_id,
            )
        return metrics

    def _validated_files(self, task: Task) -> list[str]:
        files = task.scope.files_hint
        if len(files) > self.budgets.max_files:
            logger.warning(
                "Task %s lists %d file hints; only the first %d are sent.",
                task.id,
                len(files),
                self.budgets.max_files,
            )
        selected = files[: self.budgets.max_files]
        for path in selected:
            if not path.strip() or "\n" in path:
                raise ValidationError(
                    f"Task {task.id} scope hint must be a single file path: {path!r}",
                    reason="invalid_scope_hint",
                    task_id=task.id,
                )
        return selected

    @staticmethod
    def _check_count(task: Task, name: str, items: list[str], maximum: int) -> None:
        if len(items) <= maximum:
            return
        raise ValidationError(
            f"Task {task.id} has {len(items)} {name} (max: {maximum}).",
            reason=f"too_many_{name}",
            task_id=task.id,
        )

    @staticmethod
    def _valid_pattern(pattern: str) -> bool:
        match = PATTERN_FORMAT.match(pattern.strip())
        if match is None:
            return False
        return int(match.group("start")) <= int(match.group("end"))

    @staticmethod
    def _append_items(sections: list[str], title: str, items: Iterable[str], limit: int) -> None:
        rendered = [f"- {truncate(item, limit)}" for item in items]
        if not rendered:
            return
        sections.append(f"## {title}")
        sections.extend(rendered)
        sections.append("")

    def _find_debris(self, raw_text: str) -> list[str]:
        lowered = raw_text.lower()
        return [phrase for phrase in self._debris if phrase.lower() in lowered]

    def _detect_full_file(self, raw_text: str) -> bool:
        threshold = self.config.full_file_line_threshold
        in_file = False
        line_count = 0
        for line in raw_text.split("\n"):
            if FILE_MARKER_PATTERN.match(line):
                if line_count > threshold:
                    return True
                in_file = True
                line_count = 0
            elif in_file:
                line_count += 1
        return line_count > threshold
