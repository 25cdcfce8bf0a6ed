import json
import shlex
import subprocess
import sys
from pathlib import Path
from typing import Any

from click.testing import CliRunner

from codecrew.backends.base import AgentBackend, SessionStatus
from codecrew.cli import cli
from codecrew.config import load_config, save_config

SPEC_DOC = "## Requirements\n1. Greet users by name\n\n## Acceptance\n- GIVEN a name THEN greet\n"
ARCH_DOC = "## Design\nOne module per message.\n\n## API\ngreet(name) -> str\n"
QA_DOC = "## Test Plan\nUnit tests per function.\n\n## Risks\nNone known.\n"
BACKLOG_ANSWER = """```yaml
tasks:
  - id: "T01"
    title: "Create greeting module"
    description: "Add a greet function that returns a greeting for a name."
    acceptance: ["greet returns the greeting"]
    scope: {files_hint: ["src/greet.py"], estimated_hours: 1}
  - id: "T02"
    title: "Create farewell module"
    description: "Add a farewell function that returns a goodbye for a name."
    depends_on: ["T01"]
    acceptance: ["farewell returns the goodbye"]
    scope: {files_hint: ["src/bye.py"], estimated_hours: 1}
```"""


class FakeBackend(AgentBackend):
    name = "fake"

    def __init__(self, *, fail_first: set[str] | None = None) -> None:
        self.fail_first = fail_first or set()
        self.sessions: dict[str, dict[str, Any]] = {}
        self.created = 0
        self.seen: set[str] = set()

    async def create_session(
        self,
        phase: str,
        *,
        title: str | None = None,
        model: str | None = None,
        working_directory: Path | None = None,
    ) -> str:
        _ = phase, model
        self.created += 1
        session_id = f"fake-{self.created}"
        self.sessions[session_id] = {
            "title": title or "",
            "cwd": working_directory,
            "status": "idle",
            "output": "",
        }
        return session_id

    async def prompt(self, session_id: str, text: str) -> None:
        session = self.sessions[session_id]
        session["status"] = "idle"
        if "Product/Spec" in text:
            session["output"] = SPEC_DOC
        elif "Architecture planning" in text:
            session["output"] = ARCH_DOC
        elif "QA/Risk" in text:
            session["output"] = QA_DOC
        elif "task breakdown" in text:
            session["output"] = BACKLOG_ANSWER
        else:
            task_id = session["title"].rsplit(": ", 1)[-1]
            if task_id in self.fail_first and task_id not in self.seen:
                self.seen.add(task_id)
                session["status"] = "error"
                session["output"] = "agent crashed"
                return
            (Path(session["cwd"]) / f"{task_id.lower()}.py").write_text(
                "VALUE = 1\n", encoding="utf-8"
            )
            session["output"] = "Implemented the change and the checks pass."

    async def get_status(self, session_id: str) -> SessionStatus:
        return self.sessions[session_id]["status"]

    async def get_last_output(self, session_id: str) -> str:
        return self.sessions[session_id]["output"]

    async def delete_session(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)

    async def exists(self, session_id: str) -> bool:
        return session_id in self.sessions


def _init_git_repo(repo_path: Path) -> None:
    def run(cmd: list[str]) -> None:
        subprocess.run(cmd, cwd=repo_path, check=True, text=True, capture_output=True)

    run(["git", "init"])
    run(["git", "config", "user.email", "test@example.com"])
    run(["git", "config", "user.name", "Test User"])
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    run(["git", "add", "README.md"])
    run(["git", "commit", "-m", "seed"])


def _set_safe_commands(config_path: Path, *, test_exit: int = 0) -> None:
    python = shlex.quote(sys.executable)
    config = load_config(config_path)
    config.project.lint_command = f"{python} -c \"print('lint ok')\""
    config.project.type_check_command = f"{python} -c \"print('type ok')\""
    config.project.test_command = f"{python} -c \"raise SystemExit({test_exit})\""
    config.project.verify_command = f"{python} -c \"print('verify ok')\""
    config.backend.poll_interval_seconds = 0.01
    save_config(config_path, config)


def _prepare(tmp_path: Path, monkeypatch, backend: FakeBackend) -> tuple[Path, CliRunner]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    monkeypatch.setattr("codecrew.cli._build_backend", lambda config, repo_root: backend)
    runner = CliRunner()
    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0, init_result.output
    return repo, runner


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    backend = FakeBackend(fail_first={"T01"})
    repo, runner = _prepare(tmp_path, monkeypatch, backend)
    assert ".codecrew/" in (repo / ".gitignore").read_text(encoding="utf-8")
    _set_safe_commands(repo / "codecrew.toml")
    (repo / "CONTEXT.md").write_text("Build a greeting library.\n", encoding="utf-8")

    plan_result = runner.invoke(cli, ["plan", "CONTEXT.md"])
    assert plan_result.exit_code == 0, plan_result.output
    plan_text = (repo / "tasks" / "PLAN.md").read_text(encoding="utf-8")
    assert "## 4. API & Data Models" in plan_text
    assert "greet(name) -> str" in plan_text

    backlog_result = runner.invoke(cli, ["backlog", "greet-001"])
    assert backlog_result.exit_code == 0, backlog_result.output
    assert "2 tasks" in backlog_result.output
    assert (repo / "specs" / "_backlog" / "v1.yaml").exists()

    health_result = runner.invoke(cli, ["health"])
    assert health_result.exit_code == 0, health_result.output
    assert "type_check" in health_result.output

    implement_result = runner.invoke(cli, ["implement"])
    assert implement_result.exit_code == 0, implement_result.output
    assert "completed: 2" in implement_result.output
    assert "rebased: 1" in implement_result.output
    assert "T01: Messy run detected" in implement_result.output
    assert (repo / "t01.py").exists()
    assert (repo / "t02.py").exists()
    assert backend.sessions == {}

    status_result = runner.invoke(cli, ["status", "--json"])
    assert status_result.exit_code == 0
    payload = json.loads(status_result.output)
    assert payload["track_id"] == "greet-001"
    assert payload["stats"]["completed"] == 2
    assert {task["id"]: task["status"] for task in payload["tasks"]} == {
        "T01": "completed",
        "T02": "completed",
    }

    history_result = runner.invoke(cli, ["spec-history", "T01"])
    assert history_result.exit_code == 0
    assert "v1" in history_result.output and "initial" in history_result.output
    assert "v2" in history_result.output

    compare_result = runner.invoke(cli, ["spec-history", "T01", "--compare", "1", "2"])
    assert compare_result.exit_code == 0
    assert "revision:" in compare_result.output

    rebase_result = runner.invoke(cli, ["rebase", "T01"])
    assert rebase_result.exit_code != 0
    assert "ValidationError[invalid_transition]" in rebase_result.output


def test_implement_refuses_broken_tooling(tmp_path: Path, monkeypatch) -> None:
    backend = FakeBackend()
    repo, runner = _prepare(tmp_path, monkeypatch, backend)
    _set_safe_commands(repo / "codecrew.toml", test_exit=2)
    (repo / "tasks" / "BACKLOG.yaml").write_text(
        "track_id: t\ntasks:\n"
        "  - {id: T01, title: a, description: b, acceptance: [c]}\n",
        encoding="utf-8",
    )

    result = runner.invoke(cli, ["implement"])

    assert result.exit_code != 0
    assert "InstrumentationError[instrumentation_broken]" in result.output
    assert backend.created == 0


def test_status_without_backlog_reports_persistence_error(tmp_path: Path, monkeypatch) -> None:
    _, runner = _prepare(tmp_path, monkeypatch, FakeBackend())

    result = runner.invoke(cli, ["status"])

    assert result.exit_code != 0
    assert "PersistenceError[missing_backlog]" in result.output


def test_backlog_requires_plan(tmp_path: Path, monkeypatch) -> None:
    _, runner = _prepare(tmp_path, monkeypatch, FakeBackend())

    result = runner.invoke(cli, ["backlog", "greet-001"])

    assert result.exit_code != 0
    assert "Run `crew plan` first" in result.output
