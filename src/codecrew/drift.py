from __future__ import annotations

import logging

from codecrew.errors import ContaminationError
from codecrew.models import ContextMetrics

logger = logging.getLogger(__name__)


class DriftMonitor:
    """Tracks one baseline per phase and rejects growth or contamination against it."""

    def __init__(self, max_growth: float = 0.5) -> None:
        if max_growth < 0:
            raise ValueError("max_growth must be non-negative.")
        self.max_growth = max_growth
        self._baselines: dict[str, ContextMetrics] = {}

    @property
    def baselines(self) -> dict[str, ContextMetrics]:
        return dict(self._baselines)

    def check_drift(self, task_id: str, phase: str, metrics: ContextMetrics) -> None:
        if phase.startswith("implementation"):
            if len(metrics.task_ids) > 1:
                raise ContaminationError(
                    f"Cross-task contamination in {task_id}: found {len(metrics.task_ids)} "
                    f"task ids: {', '.join(sorted(metrics.task_ids))}",
                    reason="contamination",
                    task_id=task_id,
                )
            if metrics.debris_count > 0:
                raise ContaminationError(
                    f"Planning debris in {task_id}/{phase}: "
                    f"{metrics.debris_count} debris phrases detected",
                    reason="debris_in_implementation",
                    task_id=task_id,
                )

        baseline = self._baselines.get(phase)
        if baseline is None or baseline.size_bytes == 0:
            self._baselines[phase] = metrics
            logger.info("Baseline for %s/%s: %d bytes", task_id, phase, metrics.size_bytes)
            return
        growth = (metrics.size_bytes - baseline.size_bytes) / baseline.size_bytes
        if growth > self.max_growth:
            raise ContaminationError(
                f"Context drift detected in {task_id}/{phase}: {metrics.size_bytes} bytes "
                f"(grew {growth * 100:.1f}% from {baseline.size_bytes})",
                reason="excessive_growth",
                task_id=task_id,
            )
        logger.debug("Drift check passed: %s/%s", task_id, phase)

    def report(self) -> str:
        lines = ["=== Context Drift Report ===", ""]
        for phase, metrics in self._baselines.items():
            lines.append(f"{phase}:")
            lines.append(f"  Size: {metrics.size_bytes} bytes")
            lines.append(f"  Files: {metrics.unique_files}")
            lines.append(f"  Tasks: {len(metrics.task_ids)}")
            lines.append("")
        return "\n".join(lines)

    def reset(self) -> None:
        self._baselines.clear()
