import asyncio
from pathlib import Path

import pytest

from codecrew.backends.base import AgentBackend, SessionStatus
from codecrew.backlog_generator import BacklogGenerator, extract_yaml_block, parse_backlog
from codecrew.config import ContextConfig
from codecrew.context_gate import ContextGate
from codecrew.errors import ValidationError
from codecrew.sessions import AgentSessionBroker
from codecrew.state import BacklogStore

BACKLOG_ANSWER = """Here is the breakdown.

```yaml
version: "1.0"
track_id: "ignored"
tasks:
  - id: "T01"
    title: "Create user model"
    description: "Add the user table with email and password hash."
    status: "completed"
    attempts: 4
    acceptance:
      - "Migration creates the users table"
    scope:
      files_hint: ["src/models/user.py"]
      estimated_hours: 2
  - id: "T02"
    title: "Add login endpoint"
    description: "POST /login checks the password hash."
    depends_on: ["T01"]
    acceptance:
      - "Valid credentials return a token"
    context:
      patterns:
        - "src/api/health.py:1-20 - route layout"
```
"""


class AnswerBackend(AgentBackend):
    name = "fake"

    def __init__(self, answer: str) -> None:
        self.answer = answer
        self.sessions: dict[str, str] = {}
        self.prompts: list[str] = []

    async def create_session(
        self,
        phase: str,
        *,
        title: str | None = None,
        model: str | None = None,
        working_directory: Path | None = None,
    ) -> str:
        _ = title, model, working_directory
        session_id = f"{phase}-{len(self.prompts)}"
        self.sessions[session_id] = ""
        return session_id

    async def prompt(self, session_id: str, text: str) -> None:
        self.prompts.append(text)
        self.sessions[session_id] = self.answer

    async def get_status(self, session_id: str) -> SessionStatus:
        _ = session_id
        return "idle"

    async def get_last_output(self, session_id: str) -> str:
        return self.sessions[session_id]

    async def delete_session(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)

    async def exists(self, session_id: str) -> bool:
        return session_id in self.sessions


def test_parse_backlog_resets_runtime_fields() -> None:
    backlog = parse_backlog(BACKLOG_ANSWER, "auth-001", ContextGate(ContextConfig()))

    assert backlog.track_id == "auth-001"
    assert [task.id for task in backlog.tasks] == ["T01", "T02"]
    assert backlog.tasks[0].status == "pending"
    assert backlog.tasks[0].attempts == 0
    assert backlog.tasks[1].depends_on == ["T01"]


def test_extract_yaml_block_requires_fence() -> None:
    with pytest.raises(ValidationError) as exc_info:
        extract_yaml_block("tasks: []")
    assert exc_info.value.reason == "missing_yaml"

    with pytest.raises(ValidationError) as exc_info:
        extract_yaml_block("```yaml\ntasks: [oops\n```")
    assert exc_info.value.reason == "invalid_yaml"


@pytest.mark.parametrize(
    ("answer", "reason"),
    [
        ("```yaml\ntrack_id: x\ntasks: []\n```", "empty_backlog"),
        (
            "```yaml\ntasks:\n  - id: T01\n    title: a\n    description: b\n```",
            "missing_acceptance",
        ),
        (
            "```yaml\ntasks:\n"
            "  - {id: T01, title: a, description: b, acceptance: [x], depends_on: [T02]}\n"
            "  - {id: T02, title: a, description: b, acceptance: [x], depends_on: [T01]}\n"
            "```",
            "cyclic_dependency",
        ),
    ],
)
def test_parse_backlog_rejects_invalid_plans(answer: str, reason: str) -> None:
    with pytest.raises(ValidationError) as exc_info:
        parse_backlog(answer, "t", ContextGate(ContextConfig()))

    assert exc_info.value.reason == reason


def test_generate_saves_backlog_and_tears_down_session(tmp_path: Path) -> None:
    backend = AnswerBackend(BACKLOG_ANSWER)
    broker = AgentSessionBroker(backend, poll_interval_seconds=0.01, confirm_delay_seconds=0)
    store = BacklogStore(tmp_path / "tasks" / "BACKLOG.yaml")
    generator = BacklogGenerator(broker, ContextGate(ContextConfig()), store, timeout_seconds=5)

    backlog = asyncio.run(generator.generate("# Unified Implementation Plan\n...", "auth-001"))

    assert store.load() == backlog
    assert backend.sessions == {}
    assert 'track_id: "auth-001"' in backend.prompts[0]
    assert "# Unified Implementation Plan" in backend.prompts[0]


def test_generate_does_not_save_rejected_backlog(tmp_path: Path) -> None:
    backend = AnswerBackend("I could not produce a backlog.")
    broker = AgentSessionBroker(backend, poll_interval_seconds=0.01, confirm_delay_seconds=0)
    store = BacklogStore(tmp_path / "BACKLOG.yaml")
    generator = BacklogGenerator(broker, ContextGate(ContextConfig()), store, timeout_seconds=5)

    with pytest.raises(ValidationError):
        asyncio.run(generator.generate("plan", "auth-001"))

    assert not store.exists()
    assert backend.sessions == {}
