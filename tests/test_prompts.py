from __future__ import annotations

from bugfixbot.models import FixTask
from bugfixbot.prompts import (
    DEFAULT_INSTRUCTIONS,
    build_acknowledgment_reply,
    build_compact_prompt,
    build_fix_prompt,
    estimate_tokens,
)


def _task(comment_id: int, **overrides: object) -> FixTask:
    values: dict[str, object] = {
        "comment_id": comment_id,
        "file_path": "src/app.py",
        "line_start": 10,
        "line_end": 10,
        "body": "Possible None dereference\nwhen cache is empty",
        "created_at": "t",
    }
    values.update(overrides)
    return FixTask(**values)  # type: ignore[arg-type]


def test_fix_prompt_lists_each_task_with_context() -> None:
    prompt = build_fix_prompt(
        [
            _task(1, diff_hunk="@@ -8,3 +8,4 @@\n-old\n+new"),
            _task(2, file_path="", line_start=1, line_end=1, body="Missing changelog entry"),
        ]
    )

    assert prompt.startswith("Apply the following fixes to the codebase:\n")
    assert "## Fix 1: src/app.py:10\n\n> Possible None dereference\n> when cache is empty" in prompt
    assert "Context from diff:\n```diff\n@@ -8,3 +8,4 @@\n-old\n+new\n```" in prompt
    assert "## Fix 2: (general)\n\n> Missing changelog entry" in prompt
    assert prompt.endswith(f"Instructions:\n{DEFAULT_INSTRUCTIONS}")


def test_fix_prompt_includes_rules_and_custom_instructions() -> None:
    prompt = build_fix_prompt(
        [_task(1)],
        instructions="Only touch tests.",
        rules_context="## Project Rules\n\n### global--repo.mdc\n\nUse tabs.",
    )

    rules_at = prompt.index("## Project Rules")
    instructions_at = prompt.index("Instructions:\nOnly touch tests.")
    assert rules_at < instructions_at
    assert "Context from diff" not in prompt


def test_compact_prompt_uses_first_line_only() -> None:
    prompt = build_compact_prompt([_task(1), _task(2, line_end=12)])

    assert prompt.startswith("Fix these review comments:\n")
    assert "1. [src/app.py:10] Possible None dereference\n" in prompt
    assert "2. [src/app.py:10-12] Possible None dereference" in prompt
    assert "when cache is empty" not in prompt


def test_acknowledgment_reply_names_cycle() -> None:
    assert build_acknowledgment_reply("Nothing to change.", cycle=3) == (
        "Nothing to change.\n\n_bugfixbot cycle 3_"
    )


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
