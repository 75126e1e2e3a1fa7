from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
import logging
from pathlib import Path

from bugfixbot.config import FixConfig
from bugfixbot.git_ops import RevisionControl
from bugfixbot.models import FixResult, FixTask
from bugfixbot.observability import log_event
from bugfixbot.prompts import build_compact_prompt, build_fix_prompt, estimate_tokens
from bugfixbot.rules_loader import load_rules_context
from bugfixbot.shell import CommandResult


LOGGER = logging.getLogger("bugfixbot.fix_engine")


class FixEngine(ABC):
    """Applies fixes for a batch of tasks by driving an external coding tool.

    Subclasses only decide how the tool is invoked; reporting of changed files
    goes through the revision-control collaborator so every engine agrees on
    what counts as a change.
    """

    name: str = "abstract"

    def __init__(
        self,
        cwd: Path,
        git: RevisionControl,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cwd = cwd
        self._git = git
        self._logger = logger or LOGGER

    def apply_fixes(self, tasks: Sequence[FixTask], fix_config: FixConfig) -> FixResult:
        if not tasks:
            return FixResult(success=True)
        prompt = self.build_prompt(tasks, fix_config)
        log_event(
            self._logger,
            "fix_engine_started",
            engine=self.name,
            task_count=len(tasks),
            prompt_tokens=estimate_tokens(prompt),
        )
        try:
            result = self._invoke(tasks, fix_config, prompt)
        except OSError as exc:
            log_event(
                self._logger,
                "fix_engine_finished",
                level=logging.WARNING,
                engine=self.name,
                success=False,
                error=str(exc),
            )
            return FixResult(success=False, error=f"{self.name} could not be started: {exc}")
        if isinstance(result, FixResult):
            return result
        if not result.ok:
            error = _failure_message(self.name, result)
            log_event(
                self._logger,
                "fix_engine_finished",
                level=logging.WARNING,
                engine=self.name,
                success=False,
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                error=error,
            )
            return FixResult(success=False, error=error)

        changed = self._git.changed_files()
        log_event(
            self._logger,
            "fix_engine_finished",
            engine=self.name,
            success=True,
            changed_count=len(changed),
            duration_seconds=round(result.duration_seconds, 3),
        )
        if not changed:
            return FixResult(success=True, error="No changes were made")
        return FixResult(success=True, changed_files=changed)

    def build_prompt(self, tasks: Sequence[FixTask], fix_config: FixConfig) -> str:
        file_paths = [task.file_path for task in tasks if task.file_path]
        rules_context = load_rules_context(self.cwd, file_paths, logger=self._logger)
        prompt = build_fix_prompt(
            tasks,
            instructions=fix_config.instructions,
            rules_context=rules_context or None,
        )
        tokens = estimate_tokens(prompt)
        if tokens <= fix_config.max_prompt_tokens:
            return prompt
        log_event(
            self._logger,
            "fix_prompt_compacted",
            level=logging.WARNING,
            prompt_tokens=tokens,
            max_prompt_tokens=fix_config.max_prompt_tokens,
        )
        return build_compact_prompt(tasks, instructions=fix_config.instructions)

    @abstractmethod
    def _invoke(
        self, tasks: Sequence[FixTask], fix_config: FixConfig, prompt: str
    ) -> CommandResult | FixResult:
        """Run the tool once.

        A ``FixResult`` short-circuits when the tool cannot be started at all.
        """


def _failure_message(engine: str, result: CommandResult) -> str:
    if result.timed_out:
        return f"{engine} timed out"
    detail = result.stderr.strip() or result.stdout.strip()
    if detail:
        return detail
    return f"{engine} exited with code {result.exit_code}"


def create_engine(
    fix_config: FixConfig,
    cwd: Path,
    git: RevisionControl,
    *,
    logger: logging.Logger | None = None,
) -> FixEngine:
    from bugfixbot.codex_adapter import CodexEngine
    from bugfixbot.cursor_engines import CursorCliEngine, CursorCommandEngine

    if fix_config.engine == "cursor-cli":
        return CursorCliEngine(cwd, git, logger=logger)
    if fix_config.engine == "cursor-command":
        return CursorCommandEngine(cwd, git, logger=logger)
    if fix_config.engine == "codex":
        return CodexEngine(cwd, git, fix_config.codex, logger=logger)
    raise ValueError(f"Unknown fix engine: {fix_config.engine}")
