from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from bugfixbot.config import GuardrailsConfig
from bugfixbot.models import FixTask
from bugfixbot.normalizer import count_affected_lines, group_tasks_by_file


@dataclass(frozen=True)
class GuardrailResult:
    passed: bool
    reason: str | None = None
    file_count: int = 0
    line_count: int = 0


def check_guardrails(
    tasks: Sequence[FixTask], guardrails: GuardrailsConfig
) -> GuardrailResult:
    file_count = len(group_tasks_by_file(tasks))
    line_count = count_affected_lines(tasks)
    if file_count > guardrails.max_files_per_cycle:
        return GuardrailResult(
            passed=False,
            reason=(
                f"Too many files affected: {file_count} > "
                f"{guardrails.max_files_per_cycle} (max_files_per_cycle)"
            ),
            file_count=file_count,
            line_count=line_count,
        )
    if line_count > guardrails.max_lines_per_cycle:
        return GuardrailResult(
            passed=False,
            reason=(
                f"Too many lines affected: {line_count} > "
                f"{guardrails.max_lines_per_cycle} (max_lines_per_cycle)"
            ),
            file_count=file_count,
            line_count=line_count,
        )
    return GuardrailResult(passed=True, file_count=file_count, line_count=line_count)
