from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from codecrew.errors import CrewError, CrewTimeoutError
from codecrew.models import SessionHandle, utcnow_iso
from codecrew.sessions import AgentSessionBroker
from codecrew.specialists.base import SpecialistAgent, SpecialistResponse
from codecrew.specialists.planners import ArchitectAgent, RiskAnalystAgent, SpecWriterAgent

logger = logging.getLogger(__name__)

SECTION_NOT_FOUND = "_Section not found in planning output_"
EMPTY_SECTION = "_Empty section_"
NUMBERED_LINE = re.compile(r"^\s*\d+\.\s+(.*)$")
DEFAULT_STEPS = [
    "Review requirements",
    "Implement core functionality",
    "Add tests",
    "Review and refactor",
]


def extract_section(document: str, marker: str) -> str:
    """Return the body under the first heading starting with marker, up to the next heading."""
    lines = document.splitlines()
    wanted = marker.strip().lower()
    start = next(
        (index for index, line in enumerate(lines) if line.strip().lower().startswith(wanted)),
        None,
    )
    if start is None:
        return SECTION_NOT_FOUND
    end = len(lines)
    for index in range(start + 1, len(lines)):
        stripped = lines[index].lstrip()
        if stripped.startswith("# ") or stripped.startswith("## "):
            end = index
            break
    body = "\n".join(lines[start + 1 : end]).strip()
    return body or EMPTY_SECTION


def extract_numbered_list(document: str) -> list[str]:
    items: list[str] = []
    for line in document.splitlines():
        match = NUMBERED_LINE.match(line)
        if match and match.group(1).strip():
            items.append(match.group(1).strip())
    return items


def synthesize_steps(spec: str, arch: str) -> str:
    steps = list(dict.fromkeys(extract_numbered_list(spec) + extract_numbered_list(arch)))
    if not steps:
        steps = DEFAULT_STEPS
    return "\n".join(f"{index}. {step}" for index, step in enumerate(steps, start=1))


def structured_merge(spec: str, arch: str, qa: str, *, generated_at: str | None = None) -> str:
    """Combine the three planning documents under a fixed template, without any agent."""
    sections = [
        ("1. Requirements", extract_section(spec, "## Requirements")),
        ("2. Acceptance Criteria", extract_section(spec, "## Acceptance")),
        ("3. Architecture Design", extract_section(arch, "## Design")),
        ("4. API & Data Models", extract_section(arch, "## API")),
        ("5. Test Plan", extract_section(qa, "## Test Plan")),
        ("6. Risks & Mitigations", extract_section(qa, "## Risks")),
        ("7. Implementation Steps", synthesize_steps(spec, arch)),
    ]
    parts = [
        "# Unified Implementation Plan",
        "",
        "> Generated from parallel planning sessions by a deterministic merge.",
        "",
    ]
    for title, body in sections:
        parts.extend(["---", "", f"## {title}", "", body, ""])
    parts.append("---")
    if generated_at:
        parts.extend(["", f"Generated: {generated_at}"])
    return "\n".join(parts) + "\n"


@dataclass(slots=True)
class PlanningResult:
    plan_file: Path
    spec_file: Path
    arch_file: Path
    qa_file: Path
    plan_text: str
    duration_seconds: float
    session_ids: list[str]


class PlanningCoordinator:
    """Fans a context document out to three planners and merges their answers."""

    def __init__(
        self,
        broker: AgentSessionBroker,
        output_dir: Path,
        *,
        timeout_seconds: float = 600.0,
        model: str | None = None,
        roles: list[SpecialistAgent] | None = None,
    ) -> None:
        self.broker = broker
        self.output_dir = output_dir
        self.timeout_seconds = timeout_seconds
        self.roles = roles or [
            SpecWriterAgent(model=model),
            ArchitectAgent(model=model),
            RiskAnalystAgent(model=model),
        ]
        if len(self.roles) != 3:
            raise ValueError("Planning needs exactly three roles: spec, architecture, qa.")

    async def _open_all(self) -> list[SessionHandle]:
        opened = await asyncio.gather(
            *(role.open_session(self.broker) for role in self.roles), return_exceptions=True
        )
        handles = [item for item in opened if isinstance(item, SessionHandle)]
        failures = [item for item in opened if isinstance(item, BaseException)]
        if failures:
            await self._teardown_after_failure(handles, failures[0])
            raise failures[0]
        return handles

    async def _collect(self, handles: list[SessionHandle], instruction: str) -> list[str]:
        runs = [
            asyncio.create_task(
                role.run(self.broker, handle, instruction, timeout_seconds=self.timeout_seconds),
                name=f"planning-{role.role}",
            )
            for role, handle in zip(self.roles, handles, strict=True)
        ]
        try:
            done, pending = await asyncio.wait(
                runs, timeout=self.timeout_seconds, return_when=asyncio.FIRST_EXCEPTION
            )
        except BaseException:
            await self._cancel_runs(runs)
            raise
        await self._cancel_runs(pending)
        errors = [run.exception() for run in runs if run in done and run.exception() is not None]
        if errors:
            first = errors[0]
            for extra in errors[1:]:
                first.add_note(str(extra))
            raise first
        if pending:
            raise CrewTimeoutError(
                f"Planning did not finish within {self.timeout_seconds:.1f}s.",
                reason="planning_timeout",
            )
        return [run.result().content for run in runs]

    @staticmethod
    async def _cancel_runs(runs: Iterable[asyncio.Task[SpecialistResponse]]) -> None:
        pending = [run for run in runs if not run.done()]
        for run in pending:
            run.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    async def teardown(self, handles: list[SessionHandle]) -> None:
        results = await asyncio.gather(
            *(self.broker.close(handle) for handle in handles), return_exceptions=True
        )
        errors = [item for item in results if isinstance(item, BaseException)]
        if errors:
            first = errors[0]
            for extra in errors[1:]:
                first.add_note(str(extra))
            raise first

    async def _teardown_after_failure(
        self, handles: list[SessionHandle], failure: BaseException
    ) -> None:
        results = await asyncio.gather(
            *(self.broker.close(handle) for handle in handles), return_exceptions=True
        )
        for item in results:
            if isinstance(item, CrewError):
                failure.add_note(f"teardown: {item.describe()}")
            elif isinstance(item, BaseException):
                failure.add_note(f"teardown: {item}")

    async def run_planning(self, context_doc: str) -> PlanningResult:
        started = time.monotonic()
        self.output_dir.mkdir(parents=True, exist_ok=True)
        instruction = f"CONTEXT:\n{context_doc.strip()}"

        logger.info("Starting %d planning sessions.", len(self.roles))
        handles = await self._open_all()
        try:
            spec, arch, qa = await self._collect(handles, instruction)
            files: list[Path] = []
            for role, content in zip(self.roles, (spec, arch, qa), strict=True):
                path = self.output_dir / (role.output_name or f"{role.role.upper()}.md")
                path.write_text(content.rstrip() + "\n", encoding="utf-8")
                files.append(path)
            plan_text = structured_merge(spec, arch, qa, generated_at=utcnow_iso())
            plan_file = self.output_dir / "PLAN.md"
            plan_file.write_text(plan_text, encoding="utf-8")
        except BaseException as exc:
            await self._teardown_after_failure(handles, exc)
            raise

        await self.teardown(handles)
        duration = time.monotonic() - started
        logger.info("Planning finished in %.1fs; sessions confirmed absent.", duration)
        return PlanningResult(
            plan_file=plan_file,
            spec_file=files[0],
            arch_file=files[1],
            qa_file=files[2],
            plan_text=plan_text,
            duration_seconds=duration,
            session_ids=[handle.session_id for handle in handles],
        )
