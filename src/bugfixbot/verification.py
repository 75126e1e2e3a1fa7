from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging
from pathlib import Path

from bugfixbot.observability import log_event
from bugfixbot.shell import CommandResult, run_command


LOGGER = logging.getLogger("bugfixbot.verification")


@dataclass(frozen=True)
class VerificationOutcome:
    command: str
    passed: bool
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False

    @classmethod
    def from_command_result(cls, result: CommandResult) -> VerificationOutcome:
        return cls(
            command=result.command,
            passed=result.ok,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_seconds=result.duration_seconds,
            timed_out=result.timed_out,
        )


@dataclass(frozen=True)
class VerificationRunResult:
    passed: bool
    outcomes: tuple[VerificationOutcome, ...] = ()
    failed_command: str | None = None


def run_verification(
    commands: Sequence[str],
    *,
    cwd: Path | None = None,
    timeout_seconds: float = 300,
    stop_on_failure: bool = True,
    logger: logging.Logger | None = None,
) -> VerificationRunResult:
    """Run each shell command in order, bounding every one by ``timeout_seconds``."""
    log = logger or LOGGER
    if not commands:
        log_event(log, "verification_skipped", reason="no_commands")
        return VerificationRunResult(passed=True)

    outcomes: list[VerificationOutcome] = []
    failed_command: str | None = None
    for command in commands:
        log_event(log, "verification_command_started", command=command)
        outcome = VerificationOutcome.from_command_result(
            run_command(command, cwd=cwd, timeout_seconds=timeout_seconds)
        )
        outcomes.append(outcome)
        log_event(
            log,
            "verification_command_finished",
            level=logging.INFO if outcome.passed else logging.WARNING,
            command=command,
            passed=outcome.passed,
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            duration_seconds=round(outcome.duration_seconds, 3),
        )
        if outcome.passed:
            continue
        if failed_command is None:
            failed_command = command
        if stop_on_failure:
            break

    return VerificationRunResult(
        passed=failed_command is None,
        outcomes=tuple(outcomes),
        failed_command=failed_command,
    )


def format_verification_summary(result: VerificationRunResult) -> str:
    lines = [f"Verification {'PASSED' if result.passed else 'FAILED'}", ""]
    for outcome in result.outcomes:
        mark = "ok" if outcome.passed else "FAIL"
        detail = f"{outcome.duration_seconds:.2f}s"
        if outcome.timed_out:
            detail = f"{detail}, timed out"
        elif not outcome.passed:
            detail = f"{detail}, exit {outcome.exit_code}"
        lines.append(f"  [{mark}] {outcome.command} ({detail})")
    return "\n".join(lines)
