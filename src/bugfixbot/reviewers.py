from __future__ import annotations

from collections.abc import Sequence
import logging
import re
from typing import Protocol

from bugfixbot.config import ReviewerConfig
from bugfixbot.github_gateway import CheckRun, GitHubGateway
from bugfixbot.models import ReviewerStatus
from bugfixbot.observability import log_event


LOGGER = logging.getLogger("bugfixbot.reviewers")

_PENDING_CHECK_STATUSES = frozenset({"queued", "pending", "waiting", "requested"})


class ReviewerStatusSource(Protocol):
    def check_status(self, revision: str, reviewer: ReviewerConfig) -> ReviewerStatus: ...


def status_from_check_runs(
    check_runs: Sequence[CheckRun], reviewer: ReviewerConfig
) -> ReviewerStatus:
    patterns = [re.compile(pattern, re.IGNORECASE) for pattern in reviewer.check_patterns]
    for check in check_runs:
        if not any(pattern.search(check.name) for pattern in patterns):
            continue
        if check.status in _PENDING_CHECK_STATUSES:
            return "pending"
        if check.status == "in_progress":
            return "in_progress"
        if check.status == "completed":
            return "completed"
        return "unknown"
    return "unknown"


class GitHubReviewerStatusSource:
    def __init__(
        self, gateway: GitHubGateway, *, logger: logging.Logger | None = None
    ) -> None:
        self._gateway = gateway
        self._logger = logger or LOGGER

    def check_status(self, revision: str, reviewer: ReviewerConfig) -> ReviewerStatus:
        try:
            check_runs = self._gateway.list_check_runs(revision)
        except (RuntimeError, ValueError) as exc:
            log_event(
                self._logger,
                "reviewer_status_unavailable",
                level=logging.WARNING,
                reviewer=reviewer.name,
                revision=revision,
                error=str(exc),
            )
            return "unknown"
        return status_from_check_runs(check_runs, reviewer)


class ReviewerCompletionPoller:
    """Answers whether any configured reviewer is still working on a revision.

    A reviewer whose check cannot be found reports ``unknown`` and is treated
    as finished so a missing integration never blocks termination.
    """

    def __init__(
        self,
        source: ReviewerStatusSource,
        reviewers: Sequence[ReviewerConfig],
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._source = source
        self._reviewers = tuple(reviewers)
        self._logger = logger or LOGGER

    @property
    def reviewers(self) -> tuple[ReviewerConfig, ...]:
        return self._reviewers

    def statuses(self, revision: str) -> dict[str, ReviewerStatus]:
        return {
            reviewer.name: self._source.check_status(revision, reviewer)
            for reviewer in self._reviewers
        }

    def pending_reviewers(self, revision: str) -> list[str]:
        statuses = self.statuses(revision)
        pending = [
            name for name, status in statuses.items() if status in {"pending", "in_progress"}
        ]
        log_event(
            self._logger,
            "reviewers_polled",
            revision=revision,
            pending=",".join(pending) if pending else None,
            reviewer_count=len(statuses),
        )
        return pending

    def all_finished(self, revision: str) -> bool:
        return not self.pending_reviewers(revision)
