from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os
import signal
import subprocess
import time


class CommandError(RuntimeError):
    pass


LOGGER = logging.getLogger("bugfixbot.shell")
TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True)
class CommandResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _merged_env(env: dict[str, str] | None) -> dict[str, str] | None:
    if not env:
        return None
    merged = dict(os.environ)
    merged.update(env)
    return merged


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
    env: dict[str, str] | None = None,
) -> str:
    proc = subprocess.run(
        argv,
        cwd=str(cwd) if cwd else None,
        input=input_text,
        text=True,
        capture_output=True,
        check=False,
        env=_merged_env(env),
    )
    if check and proc.returncode != 0:
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            " ".join(argv),
            proc.returncode,
            _preview(proc.stderr),
            _preview(proc.stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {' '.join(argv)}\n"
            f"exit: {proc.returncode}\n"
            f"stdout:\n{proc.stdout}\n"
            f"stderr:\n{proc.stderr}"
        )
    return proc.stdout


def run_command(
    command: str | list[str],
    *,
    cwd: Path | None = None,
    timeout_seconds: float | None = None,
    input_text: str | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command to completion without raising on failure.

    A string command goes through the shell. The child gets its own process
    group so a timeout kills everything it spawned, not only the shell.
    """
    shell = isinstance(command, str)
    display = command if isinstance(command, str) else " ".join(command)
    started = time.monotonic()
    proc = subprocess.Popen(
        command,
        cwd=str(cwd) if cwd else None,
        shell=shell,
        text=True,
        stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=_merged_env(env),
        start_new_session=True,
    )
    try:
        stdout, stderr = proc.communicate(input=input_text, timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        _kill_process_group(proc)
        stdout, stderr = proc.communicate()
        duration = time.monotonic() - started
        LOGGER.warning(
            "event=command_timed_out command=%s timeout_seconds=%s",
            display,
            timeout_seconds,
        )
        return CommandResult(
            command=display,
            exit_code=TIMEOUT_EXIT_CODE,
            stdout=stdout or "",
            stderr=f"{stderr or ''}\nProcess timed out after {timeout_seconds}s",
            duration_seconds=duration,
            timed_out=True,
        )
    return CommandResult(
        command=display,
        exit_code=proc.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        duration_seconds=time.monotonic() - started,
    )


def _kill_process_group(proc: subprocess.Popen[str]) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        # Already gone between the timeout and the kill.
        pass
