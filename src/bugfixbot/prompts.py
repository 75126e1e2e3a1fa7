from __future__ import annotations

from collections.abc import Sequence
import math

from bugfixbot.models import FixTask


DEFAULT_INSTRUCTIONS = """
- Make minimal changes to address the review comments
- Do not change public APIs unless specifically requested
- Update tests if behavior changes
- If a fix is unclear or requires architectural decisions, leave a TODO comment and note it
- Preserve existing code style and conventions
""".strip()


def _quote(body: str) -> str:
    return "> " + "\n> ".join(body.split("\n"))


def _format_task(task: FixTask, index: int) -> str:
    lines = [f"## Fix {index}: {task.location}", "", _quote(task.body)]
    if task.diff_hunk:
        lines.extend(["", "Context from diff:", "```diff", task.diff_hunk, "```"])
    return "\n".join(lines)


def build_fix_prompt(
    tasks: Sequence[FixTask],
    *,
    instructions: str | None = None,
    rules_context: str | None = None,
) -> str:
    sections = ["Apply the following fixes to the codebase:", ""]
    for index, task in enumerate(tasks, start=1):
        sections.append(_format_task(task, index))
        sections.append("")
    if rules_context:
        sections.extend(["---", "", rules_context, ""])
    sections.extend(["---", "", "Instructions:", instructions or DEFAULT_INSTRUCTIONS])
    return "\n".join(sections)


def build_compact_prompt(tasks: Sequence[FixTask], *, instructions: str | None = None) -> str:
    fixes = [
        f"{index}. [{task.location}] {task.body.split(chr(10))[0]}"
        for index, task in enumerate(tasks, start=1)
    ]
    return (
        "Fix these review comments:\n"
        + "\n".join(fixes)
        + f"\n\n{instructions or DEFAULT_INSTRUCTIONS}"
    )


def build_acknowledgment_reply(message: str, *, cycle: int) -> str:
    return f"{message}\n\n_bugfixbot cycle {cycle}_"


def estimate_tokens(prompt: str) -> int:
    # Roughly four characters per token.
    return math.ceil(len(prompt) / 4)
