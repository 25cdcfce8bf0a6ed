from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from codecrew.config import ProjectConfig
from codecrew.errors import InstrumentationError
from codecrew.tooling import CommandResult, render_command, run_command

logger = logging.getLogger(__name__)

HEALTH_DIR_NAME = "__health_check__"

SMOKE_TEST = '''def test_health_check_smoke():
    assert True
'''

CLEAN_MODULE = '''"""Lint-clean module used by the tooling health check."""


def add(left, right):
    return left + right
'''

TYPED_MODULE = '''"""Type-valid module used by the tooling health check."""


def greet(name: str) -> str:
    return "hello " + name


MESSAGE: str = greet("crew")
'''


@dataclass(slots=True)
class HealthCheck:
    name: str
    target: str
    result: CommandResult

    @property
    def ok(self) -> bool:
        return self.result.ok


@dataclass(slots=True)
class HealthReport:
    work_dir: Path
    checks: list[HealthCheck] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(check.ok for check in self.checks)

    @property
    def broken(self) -> list[str]:
        return [check.name for check in self.checks if not check.ok]


class HealthProbe:
    """Proves the verification tooling accepts known-good input before it judges agents."""

    def __init__(self, config: ProjectConfig) -> None:
        self.config = config

    def _check_specs(self) -> list[tuple[str, str, str]]:
        return [
            ("test", self.config.test_command, "test_smoke.py"),
            ("lint", self.config.lint_command, "clean_module.py"),
            ("type_check", self.config.type_check_command, "typed_module.py"),
        ]

    def verify_healthy(self, work_dir: Path) -> HealthReport:
        work_dir = work_dir.resolve()
        health_dir = work_dir / HEALTH_DIR_NAME
        health_dir.mkdir(parents=True, exist_ok=True)
        report = HealthReport(work_dir=work_dir)
        try:
            (health_dir / "test_smoke.py").write_text(SMOKE_TEST, encoding="utf-8")
            (health_dir / "clean_module.py").write_text(CLEAN_MODULE, encoding="utf-8")
            (health_dir / "typed_module.py").write_text(TYPED_MODULE, encoding="utf-8")
            for name, template, filename in self._check_specs():
                command = render_command(template, health_dir / filename)
                result = run_command(
                    command,
                    cwd=work_dir,
                    timeout_seconds=self.config.command_timeout_seconds,
                )
                report.checks.append(HealthCheck(name=name, target=filename, result=result))
                logger.debug("Health check %s -> exit %d", name, result.exit_code)
        finally:
            shutil.rmtree(health_dir, ignore_errors=True)

        if not report.ok:
            details = "\n".join(
                f"- {check.name}: {check.result.summary()}"
                for check in report.checks
                if not check.ok
            )
            raise InstrumentationError(
                "Verification tooling failed on known-good input; fix the tooling before "
                f"trusting it.\n{details}",
                broken_checks=report.broken,
            )
        logger.info("Verification tooling healthy (%d checks).", len(report.checks))
        return report

    def verify_workspace(self, work_dir: Path) -> CommandResult:
        """Run the post-attempt verification command inside a task workspace."""
        command = render_command(self.config.verify_command)
        return run_command(
            command,
            cwd=work_dir,
            timeout_seconds=self.config.command_timeout_seconds,
        )
