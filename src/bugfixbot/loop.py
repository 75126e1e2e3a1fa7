from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
import time
from typing import Protocol

from bugfixbot.config import GuardrailsConfig
from bugfixbot.git_ops import RevisionControl
from bugfixbot.models import CycleResult
from bugfixbot.observability import log_event
from bugfixbot.reviewers import ReviewerCompletionPoller
from bugfixbot.shell import CommandError


LOGGER = logging.getLogger("bugfixbot.loop")

NO_PROGRESS_LIMIT = 2


class PreflightError(RuntimeError):
    pass


class CycleRunner(Protocol):
    def run_cycle(self) -> CycleResult: ...


@dataclass(frozen=True)
class Executing:
    pass


@dataclass(frozen=True)
class WaitingForReviewers:
    result: CycleResult


@dataclass(frozen=True)
class Sleeping:
    seconds: float


@dataclass(frozen=True)
class Terminated:
    result: CycleResult


Phase = Executing | WaitingForReviewers | Sleeping | Terminated


def check_preflight(
    git: RevisionControl,
    *,
    require_up_to_date: bool = True,
    auto_rebase: bool = False,
    logger: logging.Logger | None = None,
) -> None:
    log = logger or LOGGER
    if not git.is_clean():
        raise PreflightError("Working tree is not clean; commit or stash your changes first")
    if not require_up_to_date or git.is_up_to_date():
        return
    if not auto_rebase:
        raise PreflightError(
            "Branch is behind its remote; pull or rebase first (or set git.auto_rebase = true)"
        )
    log_event(log, "preflight_auto_rebase")
    try:
        git.rebase()
    except CommandError as exc:
        raise PreflightError(f"Auto-rebase failed: {exc}") from exc


def run_single_cycle(
    executor: CycleRunner,
    git: RevisionControl,
    *,
    logger: logging.Logger | None = None,
) -> CycleResult:
    """Run exactly one cycle after checking only that the tree is clean."""
    check_preflight(git, require_up_to_date=False, logger=logger)
    return executor.run_cycle()


class LoopController:
    """Runs cycles until the pull request is done or a bound is hit.

    The loop is a small state machine; ``step`` performs one transition so
    callers and tests can drive it without real time passing. A cycle that
    finds nothing to do while reviewers are still running does not count
    against ``max_cycles``.
    """

    def __init__(
        self,
        *,
        executor: CycleRunner,
        git: RevisionControl,
        guardrails: GuardrailsConfig,
        poller: ReviewerCompletionPoller | None = None,
        wait_for_reviewers: bool = True,
        auto_rebase: bool = False,
        max_cycles: int | None = None,
        poll_interval_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_cycle: Callable[[CycleResult, int], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._executor = executor
        self._git = git
        self._poller = poller
        self._wait_for_reviewers = wait_for_reviewers and poller is not None
        self._auto_rebase = auto_rebase
        self._sleep = sleep
        self._on_cycle = on_cycle
        self._logger = logger or LOGGER

        self.max_cycles = max_cycles if max_cycles is not None else guardrails.max_cycles
        if poll_interval_seconds is not None:
            self.base_interval = poll_interval_seconds
        else:
            self.base_interval = guardrails.poll_interval_seconds
        self.max_interval = max(guardrails.max_poll_interval_seconds, self.base_interval)
        self.backoff_multiplier = guardrails.backoff_multiplier

        self.interval = self.base_interval
        self.cycles_used = 0
        self.consecutive_empty = 0

    def preflight(self) -> None:
        check_preflight(self._git, auto_rebase=self._auto_rebase, logger=self._logger)

    def run(self) -> CycleResult:
        self.preflight()
        phase: Phase = Executing()
        while not isinstance(phase, Terminated):
            phase = self.step(phase)
        log_event(
            self._logger,
            "loop_terminated",
            status=phase.result.status,
            reason=phase.result.reason,
            cycles_used=self.cycles_used,
        )
        return phase.result

    def step(self, phase: Phase) -> Phase:
        if isinstance(phase, Executing):
            return self._execute()
        if isinstance(phase, WaitingForReviewers):
            return self._wait(phase)
        if isinstance(phase, Sleeping):
            return self._do_sleep(phase)
        return phase

    def _budget_exhausted(self) -> Terminated:
        return Terminated(
            CycleResult(status="stopped", reason=f"Reached max cycles: {self.max_cycles}")
        )

    def _execute(self) -> Phase:
        if self.cycles_used >= self.max_cycles:
            return self._budget_exhausted()
        result = self._executor.run_cycle()
        self.cycles_used += 1
        if self._on_cycle is not None:
            self._on_cycle(result, self.cycles_used)

        if result.status in {"failed", "stopped"}:
            return Terminated(result)
        if result.status == "complete":
            if not self._wait_for_reviewers:
                return Terminated(result)
            # Waiting on reviewers is not a fix attempt.
            self.cycles_used -= 1
            return WaitingForReviewers(result)

        if not result.fixed_count:
            self.consecutive_empty += 1
            if self.consecutive_empty >= NO_PROGRESS_LIMIT:
                return Terminated(CycleResult(status="stopped", reason="No progress detected"))
        else:
            self.consecutive_empty = 0
            self.interval = self.base_interval
        if self.cycles_used >= self.max_cycles:
            return self._budget_exhausted()
        return Sleeping(self.interval)

    def _wait(self, phase: WaitingForReviewers) -> Phase:
        assert self._poller is not None
        revision = self._git.head_revision()
        pending = self._poller.pending_reviewers(revision)
        if not pending:
            return Terminated(phase.result)
        log_event(
            self._logger,
            "reviewers_pending",
            revision=revision,
            reviewers=",".join(pending),
            wait_seconds=self.interval,
        )
        return Sleeping(self.interval)

    def _do_sleep(self, phase: Sleeping) -> Phase:
        log_event(self._logger, "loop_sleeping", seconds=phase.seconds)
        self._sleep(phase.seconds)
        self.interval = min(self.interval * self.backoff_multiplier, self.max_interval)
        return Executing()
