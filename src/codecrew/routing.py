from __future__ import annotations

from typing import Literal

from codecrew.config import AgentsConfig
from codecrew.models import Task

TaskKind = Literal["documentation", "simple_change", "complex_change", "implementation"]

DOCUMENTATION_TITLE_WORDS = ("document", "readme", "comment", "docstring", "changelog")


class ModelRouter:
    """Picks the model for an implementation session from the task's shape."""

    def __init__(self, agents: AgentsConfig) -> None:
        self.agents = agents

    @staticmethod
    def classify(task: Task) -> TaskKind:
        title = task.title.lower()
        if any(word in title for word in DOCUMENTATION_TITLE_WORDS):
            return "documentation"
        if "add documentation" in task.description.lower():
            return "documentation"
        hours = task.scope.estimated_hours
        files = len(task.scope.files_hint)
        if hours <= 2 and files <= 2:
            return "simple_change"
        if hours > 4 or files > 5:
            return "complex_change"
        return "implementation"

    def model_for_kind(self, kind: TaskKind) -> str:
        if kind in {"documentation", "simple_change"}:
            return self.agents.documentation_model
        return self.agents.implementation_model

    def model_for(self, task: Task) -> str:
        return self.model_for_kind(self.classify(task))
