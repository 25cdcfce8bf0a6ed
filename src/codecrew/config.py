from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path

DEFAULT_DEBRIS_PHRASES = [
    "we explored",
    "alternative approach",
    "after much discussion",
    "three options",
    "let me think",
    "first attempt",
    "trying different",
    "on second thought",
    "let's reconsider",
    "another possibility",
    "TODO:",
    "FIXME:",
    "NOTE:",
    "CONSIDER:",
    "EXPLORE:",
    "OPTION:",
    "ALTERNATIVE:",
    "BRAINSTORM:",
    "IDEA:",
    "MAYBE:",
]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    test_command: str = "python -m pytest -q {path}"
    lint_command: str = "ruff check {path}"
    type_check_command: str = "python -m compileall -q {path}"
    verify_command: str = "python -m pytest -q"
    command_timeout_seconds: float = 120.0


@dataclass(slots=True)
class BackendConfig:
    binary: str = "claude"
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    timeout_seconds: float = 90.0
    poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class AgentsConfig:
    planning_model: str = "claude-sonnet-4-5"
    implementation_model: str = "claude-sonnet-4-5"
    documentation_model: str = "claude-haiku-4-5"
    rebase_model: str = "claude-sonnet-4-5"


@dataclass(slots=True)
class PlanningConfig:
    timeout_seconds: float = 600.0
    output_dir: str = "tasks"


@dataclass(slots=True)
class ImplementationConfig:
    max_workers: int = 3
    timeout_seconds: float = 1800.0
    max_tries: int = 3
    verify_after_attempt: bool = True


@dataclass(slots=True)
class ContextConfig:
    max_bytes: int = 3000
    transcript_max_bytes: int = 4096
    full_file_line_threshold: int = 50
    task_id_pattern: str = r"\bT\d{2,4}\b"
    debris_phrases: list[str] = field(default_factory=lambda: list(DEFAULT_DEBRIS_PHRASES))


@dataclass(slots=True)
class DriftConfig:
    max_growth: float = 0.5


@dataclass(slots=True)
class RebaseConfig:
    max_context_bytes: int = 2500
    max_duration_seconds: float = 1200.0
    max_commits: int = 10
    max_revisions: int = 2
    use_agent: bool = False


@dataclass(slots=True)
class WorkspaceConfig:
    root: str = ".codecrew/worktrees"
    op_timeout_seconds: float = 30.0
    op_retries: int = 2


@dataclass(slots=True)
class StateConfig:
    backlog_file: str = "tasks/BACKLOG.yaml"
    specs_dir: str = "specs"
    lock_timeout_seconds: float = 3.0


@dataclass(slots=True)
class CrewConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    planning: PlanningConfig = field(default_factory=PlanningConfig)
    implementation: ImplementationConfig = field(default_factory=ImplementationConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    drift: DriftConfig = field(default_factory=DriftConfig)
    rebase: RebaseConfig = field(default_factory=RebaseConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> CrewConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> CrewConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            planning=PlanningConfig(**data.get("planning", {})),
            implementation=ImplementationConfig(**data.get("implementation", {})),
            context=ContextConfig(**data.get("context", {})),
            drift=DriftConfig(**data.get("drift", {})),
            rebase=RebaseConfig(**data.get("rebase", {})),
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return asdict(self)


SECTION_ORDER = [
    "project",
    "backend",
    "agents",
    "planning",
    "implementation",
    "context",
    "drift",
    "rebase",
    "workspace",
    "state",
]


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: CrewConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> CrewConfig:
    if not path.exists():
        return CrewConfig.default()
    return CrewConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: CrewConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
