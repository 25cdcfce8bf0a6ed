import shlex
import sys
from pathlib import Path

import pytest

from codecrew.config import ProjectConfig
from codecrew.errors import InstrumentationError
from codecrew.health import HEALTH_DIR_NAME, HealthProbe
from codecrew.tooling import render_command, run_command

PYTHON = shlex.quote(sys.executable)


def _ok(label: str) -> str:
    return f"{PYTHON} -c \"print('{label} ok')\""


def _healthy_config() -> ProjectConfig:
    return ProjectConfig(
        test_command=_ok("test"),
        lint_command=_ok("lint"),
        type_check_command=f"{PYTHON} -m py_compile {{path}}",
        verify_command=_ok("verify"),
        command_timeout_seconds=30,
    )


def test_healthy_tooling_passes_and_cleans_up(tmp_path: Path) -> None:
    report = HealthProbe(_healthy_config()).verify_healthy(tmp_path)

    assert report.ok
    assert [check.name for check in report.checks] == ["test", "lint", "type_check"]
    assert report.checks[2].target == "typed_module.py"
    assert not (tmp_path / HEALTH_DIR_NAME).exists()


def test_broken_test_runner_raises_instrumentation_error(tmp_path: Path) -> None:
    config = _healthy_config()
    config.test_command = f"{PYTHON} -c \"raise SystemExit(3)\""

    with pytest.raises(InstrumentationError) as exc_info:
        HealthProbe(config).verify_healthy(tmp_path)

    assert exc_info.value.broken_checks == ["test"]
    assert exc_info.value.reason == "instrumentation_broken"
    assert not (tmp_path / HEALTH_DIR_NAME).exists()


def test_missing_tool_is_reported_as_broken(tmp_path: Path) -> None:
    config = _healthy_config()
    config.lint_command = "definitely-not-a-linter-binary {path}"

    with pytest.raises(InstrumentationError) as exc_info:
        HealthProbe(config).verify_healthy(tmp_path)

    assert exc_info.value.broken_checks == ["lint"]


def test_verify_workspace_runs_in_workspace(tmp_path: Path) -> None:
    config = _healthy_config()
    config.verify_command = f"{PYTHON} -c \"import pathlib; print(pathlib.Path.cwd().name)\""
    workspace = tmp_path / "T01-attempt-1"
    workspace.mkdir()

    result = HealthProbe(config).verify_workspace(workspace)

    assert result.ok
    assert result.stdout_tail == "T01-attempt-1"


def test_render_command_quotes_or_appends_path() -> None:
    target = Path("/tmp/dir with space/mod.py")

    assert render_command("ruff check {path}", target) == "ruff check '/tmp/dir with space/mod.py'"
    assert render_command("pytest -q", target) == "pytest -q '/tmp/dir with space/mod.py'"
    assert render_command("pytest -q {path}") == "pytest -q"


def test_run_command_reports_timeout_and_empty(tmp_path: Path) -> None:
    slow = run_command(
        f"{PYTHON} -c \"__import__('time').sleep(5)\"", cwd=tmp_path, timeout_seconds=0.2
    )
    empty = run_command("   ", cwd=tmp_path, timeout_seconds=1)

    assert slow.timed_out is True
    assert slow.ok is False
    assert empty.exit_code == 1
