from __future__ import annotations

from collections.abc import Sequence
import logging
from pathlib import Path

from bugfixbot.config import FixConfig
from bugfixbot.fix_engine import FixEngine
from bugfixbot.models import FixResult, FixTask
from bugfixbot.observability import log_event
from bugfixbot.shell import CommandResult, run_command


# The macOS app binary skips the `cursor` wrapper script, which re-evaluates its arguments.
CURSOR_ELECTRON_PATH = Path("/Applications/Cursor.app/Contents/MacOS/Cursor")
CURSOR_COMMANDS_DIR = Path(".cursor") / "commands"


def cursor_binary() -> str:
    if CURSOR_ELECTRON_PATH.exists():
        return str(CURSOR_ELECTRON_PATH)
    return "cursor"


def find_command_template(cwd: Path, command_name: str) -> Path | None:
    for candidate in (
        cwd / CURSOR_COMMANDS_DIR / f"{command_name}.md",
        cwd / CURSOR_COMMANDS_DIR / command_name,
    ):
        if candidate.is_file():
            return candidate
    return None


def interpolate_template(template: str, *, prompt: str, tasks: Sequence[FixTask]) -> str:
    files: list[str] = []
    for task in tasks:
        if task.file_path not in files:
            files.append(task.file_path)
    return (
        template.replace("{{prompt}}", prompt)
        .replace("{{taskCount}}", str(len(tasks)))
        .replace("{{files}}", ", ".join(files))
    )


class CursorCliEngine(FixEngine):
    name = "cursor-cli"

    def _invoke(
        self, tasks: Sequence[FixTask], fix_config: FixConfig, prompt: str
    ) -> CommandResult:
        return run_command(
            [cursor_binary(), "--message", prompt],
            cwd=self.cwd,
            timeout_seconds=fix_config.timeout_seconds,
        )


class CursorCommandEngine(FixEngine):
    """Runs a project-defined ``.cursor/commands/<name>.md`` template through ``cursor agent``."""

    name = "cursor-command"

    def _invoke(
        self, tasks: Sequence[FixTask], fix_config: FixConfig, prompt: str
    ) -> CommandResult | FixResult:
        template_path = find_command_template(self.cwd, fix_config.command)
        if template_path is None:
            expected = self.cwd / CURSOR_COMMANDS_DIR / f"{fix_config.command}.md"
            log_event(
                self._logger,
                "cursor_command_missing",
                level=logging.WARNING,
                command=fix_config.command,
                expected_path=str(expected),
            )
            return FixResult(
                success=False,
                error=f'Cursor command "{fix_config.command}" not found in {CURSOR_COMMANDS_DIR}/',
            )
        message = interpolate_template(
            template_path.read_text(encoding="utf-8"), prompt=prompt, tasks=tasks
        )
        return run_command(
            ["cursor", "agent", "--print", "--workspace", str(self.cwd), message],
            cwd=self.cwd,
            timeout_seconds=fix_config.timeout_seconds,
        )


DEFAULT_COMMAND_TEMPLATES: dict[str, str] = {
    "bugbot_fix": """\
# Bugbot Fix Command

Apply the following fixes to the codebase:

{{prompt}}

## Instructions

- Make minimal changes to address the review comments
- Do not change public APIs unless specifically requested
- Update tests if behavior changes
- If a fix is unclear or requires architectural decisions, leave a TODO comment
- Preserve existing code style and conventions
""",
    "bugbot_fix_and_test": """\
# Bugbot Fix and Test Command

Apply the following fixes to the codebase:

{{prompt}}

## Instructions

- Make minimal changes to address the review comments
- Update or create tests to cover the changes
- Ensure all existing tests still pass
- If a fix is unclear, leave a TODO comment and note it
""",
}
