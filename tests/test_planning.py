import asyncio
from pathlib import Path

import pytest

from codecrew.backends.base import AgentBackend, SessionStatus
from codecrew.errors import BackendError, CrewTimeoutError, SessionLeakError
from codecrew.planning import (
    EMPTY_SECTION,
    SECTION_NOT_FOUND,
    PlanningCoordinator,
    extract_section,
    structured_merge,
)
from codecrew.sessions import AgentSessionBroker
from codecrew.specialists import ArchitectAgent, SpecWriterAgent

SPEC_DOC = """# SPEC

## Requirements
1. Users can log in with email and password
2. Sessions expire after one hour

## Acceptance
- GIVEN valid credentials WHEN posting /login THEN a token is returned
"""

ARCH_DOC = """# ARCH

## Design
A stateless auth service in front of the user store.

## API
POST /login -> {token}

## Notes
1. Keep tokens opaque
"""

QA_DOC = """# QA

## Test Plan
Unit tests for token expiry; integration test for /login.

## Risks
Clock skew between services.
"""

EXPECTED_SECTIONS = [
    "## 1. Requirements",
    "## 2. Acceptance Criteria",
    "## 3. Architecture Design",
    "## 4. API & Data Models",
    "## 5. Test Plan",
    "## 6. Risks & Mitigations",
]


class PlannerBackend(AgentBackend):
    name = "fake"

    def __init__(
        self, *, leak: bool = False, statuses: dict[str, SessionStatus] | None = None
    ) -> None:
        self.leak = leak
        self.statuses = statuses or {}
        self.polls_after_delete = 0
        self.sessions: dict[str, str] = {}
        self.calls: list[str] = []

    async def create_session(
        self,
        phase: str,
        *,
        title: str | None = None,
        model: str | None = None,
        working_directory: Path | None = None,
    ) -> str:
        _ = model, working_directory
        self.calls.append("create_session")
        session_id = f"{phase}-{title}"
        self.sessions[session_id] = ""
        return session_id

    async def prompt(self, session_id: str, text: str) -> None:
        self.calls.append("prompt")
        if "Product/Spec" in text:
            self.sessions[session_id] = SPEC_DOC
        elif "Architecture planning" in text:
            self.sessions[session_id] = ARCH_DOC
        else:
            self.sessions[session_id] = QA_DOC

    async def get_status(self, session_id: str) -> SessionStatus:
        if session_id not in self.sessions:
            self.polls_after_delete += 1
            return "error"
        return self.statuses.get(session_id.split("-", 1)[1], "idle")

    async def get_last_output(self, session_id: str) -> str:
        return self.sessions[session_id]

    async def delete_session(self, session_id: str) -> None:
        self.calls.append("delete_session")
        if not self.leak:
            self.sessions.pop(session_id, None)

    async def exists(self, session_id: str) -> bool:
        return session_id in self.sessions


def test_structured_merge_keeps_all_sections_without_backend() -> None:
    backend = PlannerBackend()

    plan = structured_merge(SPEC_DOC, ARCH_DOC, QA_DOC)

    assert backend.calls == []
    assert plan.startswith("# Unified Implementation Plan")
    positions = [plan.index(section) for section in EXPECTED_SECTIONS]
    assert positions == sorted(positions)
    assert "Sessions expire after one hour" in plan
    assert "POST /login -> {token}" in plan
    assert "Clock skew between services." in plan
    assert SECTION_NOT_FOUND not in plan
    assert "1. Users can log in with email and password" in plan
    assert "3. Keep tokens opaque" in plan


def test_structured_merge_marks_missing_sections() -> None:
    plan = structured_merge("## Requirements\n\n## Acceptance\nok\n", "no headings", "")

    assert EMPTY_SECTION in plan
    assert plan.count(SECTION_NOT_FOUND) == 4
    assert "1. Review requirements" in plan


def test_extract_section_stops_at_next_heading() -> None:
    body = extract_section(ARCH_DOC, "## design")

    assert body == "A stateless auth service in front of the user store."


def test_run_planning_writes_documents_and_confirms_teardown(tmp_path: Path) -> None:
    backend = PlannerBackend()
    broker = AgentSessionBroker(backend, poll_interval_seconds=0.01, confirm_delay_seconds=0)
    coordinator = PlanningCoordinator(broker, tmp_path / "tasks", timeout_seconds=5)

    result = asyncio.run(coordinator.run_planning("Build login for the web app."))

    assert result.plan_file == tmp_path / "tasks" / "PLAN.md"
    assert result.spec_file.read_text(encoding="utf-8").startswith("# SPEC")
    assert result.arch_file.name == "ARCH.md"
    assert result.qa_file.name == "QA.md"
    plan = result.plan_file.read_text(encoding="utf-8")
    for section in EXPECTED_SECTIONS:
        assert section in plan
    assert len(result.session_ids) == 3
    assert backend.sessions == {}
    assert broker.open_handles == []
    assert backend.calls.count("create_session") == 3
    assert backend.calls.count("delete_session") == 3


def test_run_planning_fails_when_a_session_survives_deletion(tmp_path: Path) -> None:
    backend = PlannerBackend(leak=True)
    broker = AgentSessionBroker(
        backend, poll_interval_seconds=0.01, confirm_attempts=1, confirm_delay_seconds=0
    )
    coordinator = PlanningCoordinator(broker, tmp_path / "tasks", timeout_seconds=5)

    with pytest.raises(SessionLeakError):
        asyncio.run(coordinator.run_planning("Build login."))


def test_planning_needs_three_roles(tmp_path: Path) -> None:
    broker = AgentSessionBroker(PlannerBackend())

    with pytest.raises(ValueError):
        PlanningCoordinator(broker, tmp_path, roles=[SpecWriterAgent(), ArchitectAgent()])


def test_failed_role_fails_phase_and_stops_the_other_roles(tmp_path: Path) -> None:
    backend = PlannerBackend(statuses={"spec": "error", "architecture": "running", "qa": "running"})
    broker = AgentSessionBroker(backend, poll_interval_seconds=0.01, confirm_delay_seconds=0)
    coordinator = PlanningCoordinator(broker, tmp_path / "tasks", timeout_seconds=5)

    async def scenario() -> tuple[int, int, int]:
        with pytest.raises(BackendError) as exc_info:
            await coordinator.run_planning("Build login.")
        assert exc_info.value.session_id == "planning-spec"
        polls = backend.polls_after_delete
        await asyncio.sleep(0.05)
        others = [task for task in asyncio.all_tasks() if task is not asyncio.current_task()]
        return polls, backend.polls_after_delete, len(others)

    polls_at_failure, polls_later, leftover_tasks = asyncio.run(scenario())

    assert leftover_tasks == 0
    assert polls_later == polls_at_failure
    assert backend.sessions == {}
    assert broker.open_handles == []
    assert backend.calls.count("delete_session") == 3
    assert not (tmp_path / "tasks" / "PLAN.md").exists()


def test_timed_out_role_fails_phase_and_tears_down_all_sessions(tmp_path: Path) -> None:
    backend = PlannerBackend(statuses={"qa": "running"})
    broker = AgentSessionBroker(backend, poll_interval_seconds=0.01, confirm_delay_seconds=0)
    coordinator = PlanningCoordinator(broker, tmp_path / "tasks", timeout_seconds=0.2)

    with pytest.raises(CrewTimeoutError):
        asyncio.run(coordinator.run_planning("Build login."))

    assert backend.sessions == {}
    assert broker.open_handles == []
    assert backend.calls.count("delete_session") == 3
    assert not (tmp_path / "tasks" / "PLAN.md").exists()
