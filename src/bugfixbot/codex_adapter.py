from __future__ import annotations

from collections.abc import Sequence
import logging
from pathlib import Path

from bugfixbot.config import CodexConfig, FixConfig
from bugfixbot.fix_engine import FixEngine
from bugfixbot.git_ops import RevisionControl
from bugfixbot.models import FixTask
from bugfixbot.shell import CommandResult, run_command


LOGGER = logging.getLogger("bugfixbot.codex_adapter")
DEFAULT_SANDBOX = "workspace-write"


class CodexEngine(FixEngine):
    name = "codex"

    def __init__(
        self,
        cwd: Path,
        git: RevisionControl,
        config: CodexConfig,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(cwd, git, logger=logger or LOGGER)
        self._config = config

    def command(self) -> list[str]:
        cmd = ["codex", "exec", "--skip-git-repo-check"]
        self._append_common_options(cmd)
        cmd.append("-")
        return cmd

    def _invoke(
        self, tasks: Sequence[FixTask], fix_config: FixConfig, prompt: str
    ) -> CommandResult:
        return run_command(
            self.command(),
            cwd=self.cwd,
            timeout_seconds=fix_config.timeout_seconds,
            input_text=prompt,
        )

    def _append_common_options(self, cmd: list[str]) -> None:
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        cmd.extend(["--sandbox", self._config.sandbox or DEFAULT_SANDBOX])
        if self._config.profile:
            cmd.extend(["--profile", self._config.profile])
        if self._config.extra_args:
            cmd.extend(self._config.extra_args)
