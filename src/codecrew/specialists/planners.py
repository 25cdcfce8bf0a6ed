from __future__ import annotations

from codecrew.specialists.base import SpecialistAgent


class SpecWriterAgent(SpecialistAgent):
    role = "spec"
    prompt_file = "spec_writer.md"
    output_name = "SPEC.md"
    fallback_prompt = """
You are the Product/Spec planning specialist.
Produce a SPEC.md document with a `## Requirements` section (numbered, functional and
non-functional) and a `## Acceptance` section (testable GIVEN/WHEN/THEN criteria).
Only your final document is kept.
""".strip()


class ArchitectAgent(SpecialistAgent):
    role = "architecture"
    prompt_file = "architect.md"
    output_name = "ARCH.md"
    fallback_prompt = """
You are the Architecture planning specialist.
Produce an ARCH.md document with a `## Design` section (components, key decisions)
and an `## API` section (interfaces, data models, integration points).
Only your final document is kept.
""".strip()


class RiskAnalystAgent(SpecialistAgent):
    role = "qa"
    prompt_file = "risk_analyst.md"
    output_name = "QA.md"
    fallback_prompt = """
You are the QA/Risk planning specialist.
Produce a QA.md document with a `## Test Plan` section (unit, integration, edge cases)
and a `## Risks` section (technical risks, mitigations, blockers).
Only your final document is kept.
""".strip()


class BacklogWriterAgent(SpecialistAgent):
    role = "backlog"
    prompt_file = "backlog_writer.md"
    fallback_prompt = """
You are a task breakdown specialist.
Break the implementation plan into atomic tasks of one to four hours and answer with a
single fenced yaml block containing the backlog.
""".strip()
