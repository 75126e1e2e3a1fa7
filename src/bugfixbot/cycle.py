from __future__ import annotations

from collections.abc import Sequence
import logging
from pathlib import Path

from bugfixbot.config import AppConfig
from bugfixbot.fix_engine import FixEngine
from bugfixbot.git_ops import RevisionControl
from bugfixbot.github_gateway import CommentSource, UnsupportedReplyError, append_reply_marker
from bugfixbot.guardrails import check_guardrails
from bugfixbot.models import ALREADY_FIXED_REVISION, CycleResult, CycleStatus, FixTask
from bugfixbot.normalizer import normalize_comments
from bugfixbot.observability import log_event
from bugfixbot.prompts import build_acknowledgment_reply
from bugfixbot.state import StateStore
from bugfixbot.verification import format_verification_summary, run_verification


LOGGER = logging.getLogger("bugfixbot.cycle")


class CycleExecutor:
    """One fetch, fix, verify, push pass over the pending review comments.

    Every step can end the cycle; the first one that does decides the result.
    The session store must already be open for the target pull request.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        store: StateStore,
        comments: CommentSource,
        engine: FixEngine,
        git: RevisionControl,
        cwd: Path,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._comments = comments
        self._engine = engine
        self._git = git
        self._cwd = cwd
        self._logger = logger or LOGGER

    def run_cycle(self) -> CycleResult:
        cycle = self._store.increment_cycle()
        log_event(self._logger, "cycle_started", cycle=cycle, engine=self._engine.name)
        result = self._run(cycle)
        log_event(
            self._logger,
            "cycle_finished",
            level=logging.WARNING if result.status == "failed" else logging.INFO,
            cycle=cycle,
            status=result.status,
            reason=result.reason,
            revision=result.revision,
            fixed_count=result.fixed_count,
        )
        return result

    def _run(self, cycle: int) -> CycleResult:
        try:
            raw_comments = self._comments.fetch_comments()
        except (RuntimeError, ValueError, OSError) as exc:
            return _result("failed", f"Failed to fetch comments: {_summarize(str(exc))}")

        tasks = normalize_comments(raw_comments, self._store.state)
        log_event(
            self._logger,
            "comments_normalized",
            cycle=cycle,
            raw_count=len(raw_comments),
            task_count=len(tasks),
        )
        if not tasks:
            return _result("complete", "No actionable comments")

        guardrail = check_guardrails(tasks, self._config.guardrails)
        if not guardrail.passed:
            return _result("stopped", guardrail.reason)

        fix = self._engine.apply_fixes(tasks, self._config.fix)
        if not fix.success:
            return _result("failed", f"Fix engine failed: {fix.error or 'unknown error'}")
        if not fix.changed_files:
            if self._config.fix.acknowledge_unchanged:
                self._acknowledge(tasks, cycle)
            self._store.mark_handled(tasks, ALREADY_FIXED_REVISION)
            return CycleResult(
                status="complete",
                reason=f"No changes needed for {len(tasks)} comment(s)",
                fixed_count=0,
            )

        verification = run_verification(
            self._config.verification.commands,
            cwd=self._cwd,
            timeout_seconds=self._config.verification.timeout_seconds,
            stop_on_failure=self._config.verification.stop_on_failure,
            logger=self._logger,
        )
        if not verification.passed:
            log_event(
                self._logger,
                "verification_failed",
                level=logging.WARNING,
                cycle=cycle,
                summary=format_verification_summary(verification),
            )
            return _result("failed", f"Verification failed: {verification.failed_command}")

        try:
            revision = self._git.stage_commit_push(
                self._config.git.commit_message(cycle),
                force=self._config.git.push_force,
            )
        except (RuntimeError, OSError) as exc:
            return _result("failed", f"Commit/push failed: {_summarize(str(exc))}")

        self._store.mark_handled(tasks, revision)
        self._follow_up(tasks, cycle)
        return CycleResult(
            status="pushed",
            reason=f"Pushed fixes for {len(tasks)} comment(s)",
            revision=revision,
            fixed_count=len(tasks),
        )

    def _acknowledge(self, tasks: Sequence[FixTask], cycle: int) -> None:
        body = build_acknowledgment_reply(self._config.fix.acknowledge_message, cycle=cycle)
        for task in tasks:
            try:
                try:
                    self._comments.reply_to(task, body)
                except UnsupportedReplyError:
                    self._comments.post_comment(
                        append_reply_marker(body=body, comment_id=task.comment_id)
                    )
            except (RuntimeError, ValueError, OSError) as exc:
                log_event(
                    self._logger,
                    "acknowledgment_failed",
                    level=logging.WARNING,
                    cycle=cycle,
                    comment_id=task.comment_id,
                    error=_summarize(str(exc)),
                )

    def _follow_up(self, tasks: Sequence[FixTask], cycle: int) -> None:
        if self._config.github.resolve_threads:
            try:
                resolved, failed = self._comments.resolve_threads(tasks)
                log_event(
                    self._logger,
                    "review_threads_resolved",
                    cycle=cycle,
                    resolved=resolved,
                    failed=failed,
                )
            except (RuntimeError, ValueError, OSError) as exc:
                log_event(
                    self._logger,
                    "review_threads_resolve_failed",
                    level=logging.WARNING,
                    cycle=cycle,
                    error=_summarize(str(exc)),
                )
        for reviewer in self._config.reviewers:
            if not reviewer.trigger_phrase:
                continue
            try:
                self._comments.post_comment(reviewer.trigger_phrase)
                log_event(self._logger, "reviewer_triggered", cycle=cycle, reviewer=reviewer.name)
            except (RuntimeError, ValueError, OSError) as exc:
                log_event(
                    self._logger,
                    "reviewer_trigger_failed",
                    level=logging.WARNING,
                    cycle=cycle,
                    reviewer=reviewer.name,
                    error=_summarize(str(exc)),
                )


def _result(status: CycleStatus, reason: str | None) -> CycleResult:
    return CycleResult(status=status, reason=reason)


def _summarize(text: str, *, limit: int = 200) -> str:
    compact = " ".join(text.split())
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."
