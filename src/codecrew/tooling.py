from __future__ import annotations

import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
PATH_PLACEHOLDER = "{path}"


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    stdout_tail: str
    stderr_tail: str
    used_shell: bool
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def summary(self) -> str:
        output = "\n".join(part for part in (self.stdout_tail, self.stderr_tail) if part)
        return f"$ {self.command} (exit {self.exit_code})\n{output}".strip()


def render_command(template: str, path: Path | None = None) -> str:
    command = template.strip()
    if path is None:
        return command.replace(PATH_PLACEHOLDER, "").strip()
    quoted = shlex.quote(str(path))
    if PATH_PLACEHOLDER in command:
        return command.replace(PATH_PLACEHOLDER, quoted)
    return f"{command} {quoted}"


def run_command(command: str, *, cwd: Path, timeout_seconds: float) -> CommandResult:
    command_text = command.strip()
    if not command_text:
        return CommandResult(
            command=command,
            exit_code=1,
            stdout_tail="",
            stderr_tail="Command is empty.",
            used_shell=False,
        )

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    try:
        proc = subprocess.run(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as exc:
        return CommandResult(
            command=command,
            exit_code=-1,
            stdout_tail=_tail(exc.stdout),
            stderr_tail=f"Command timed out after {timeout_seconds:.1f}s",
            used_shell=used_shell,
            timed_out=True,
        )
    except FileNotFoundError as exc:
        return CommandResult(
            command=command,
            exit_code=127,
            stdout_tail="",
            stderr_tail=str(exc),
            used_shell=used_shell,
        )
    return CommandResult(
        command=command,
        exit_code=proc.returncode,
        stdout_tail=_tail(proc.stdout),
        stderr_tail=_tail(proc.stderr),
        used_shell=used_shell,
    )


def _tail(output: str | bytes | None, limit: int = 1000) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")
    return output.strip()[-limit:]
