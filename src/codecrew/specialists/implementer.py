from __future__ import annotations

from codecrew.specialists.base import SpecialistAgent

INSTRUCTIONS = """## Instructions
1. Implement the task according to the specification.
2. Create or modify only the files the task needs.
3. Write tests for the behaviour you add.
4. Make sure the test suite passes.
5. Commit your changes with a descriptive message."""


class ImplementerAgent(SpecialistAgent):
    role = "implementer"
    phase = "implementation"
    prompt_file = "implementer.md"
    fallback_prompt = """
You are the implementation specialist.
Implement exactly the task below inside the current working directory.
Keep changes small and match existing conventions.
""".strip()

    def task_instruction(self, bundle_text: str) -> str:
        return f"{bundle_text.rstrip()}\n\n{INSTRUCTIONS}"
