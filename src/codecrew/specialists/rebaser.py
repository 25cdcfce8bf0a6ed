from __future__ import annotations

from codecrew.specialists.base import SpecialistAgent


class RebaserAgent(SpecialistAgent):
    role = "rebaser"
    phase = "rebase"
    prompt_file = "rebaser.md"
    fallback_prompt = """
You rewrite task specifications that led to messy implementation attempts.
Answer with one fenced yaml block holding only `title`, `description`, `acceptance`,
`scope` and `context` for the task. Make the description more precise, add the
constraints and gotchas the attempt revealed, and keep every field short.
""".strip()
