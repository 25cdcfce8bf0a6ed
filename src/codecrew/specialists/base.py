from __future__ import annotations

from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

from codecrew.models import Phase, SessionHandle
from codecrew.sessions import AgentSessionBroker


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    role: str = "specialist"
    phase: Phase = "planning"
    prompt_file: str | None = None
    output_name: str | None = None
    fallback_prompt: str = "You are a software specialist."

    def __init__(self, *, model: str | None = None) -> None:
        self.model = model
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("codecrew.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    def render(self, instruction: str) -> str:
        return f"{self.system_prompt}\n\n{instruction.strip()}\n"

    async def open_session(
        self,
        broker: AgentSessionBroker,
        *,
        task_id: str | None = None,
        working_directory: Path | None = None,
    ) -> SessionHandle:
        title = f"{self.role}: {task_id}" if task_id else self.role
        return await broker.open(
            self.phase,
            task_id=task_id,
            title=title,
            model=self.model,
            working_directory=working_directory,
        )

    async def run(
        self,
        broker: AgentSessionBroker,
        handle: SessionHandle,
        instruction: str,
        *,
        timeout_seconds: float,
    ) -> SpecialistResponse:
        await broker.send(handle, self.render(instruction))
        content = await broker.wait_for_output(handle, timeout_seconds)
        return SpecialistResponse(
            role=self.role,
            content=content.strip(),
            metadata={"session_id": handle.session_id, "phase": handle.phase},
        )
