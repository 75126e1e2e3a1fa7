from __future__ import annotations

from pathlib import Path
import logging
import re
from typing import Protocol

from bugfixbot.observability import log_event
from bugfixbot.shell import CommandError, run


LOGGER = logging.getLogger("bugfixbot.git_ops")

_GITHUB_REMOTE_RE = re.compile(
    r"github\.com[:/](?P<owner>[^/]+)/(?P<name>[^/]+?)(?:\.git)?/?$"
)


class RevisionControl(Protocol):
    def is_clean(self) -> bool: ...

    def is_up_to_date(self) -> bool: ...

    def rebase(self) -> None: ...

    def stage_commit_push(self, message: str, *, force: bool = False) -> str: ...

    def head_revision(self) -> str: ...

    def changed_files(self) -> tuple[str, ...]: ...


def parse_github_remote(remote_url: str) -> tuple[str, str] | None:
    """Return ``(owner, name)`` for SSH or HTTPS GitHub remotes."""
    match = _GITHUB_REMOTE_RE.search(remote_url.strip())
    if match is None:
        return None
    return match.group("owner"), match.group("name")


def _porcelain_paths(porcelain: str) -> tuple[str, ...]:
    paths: list[str] = []
    for line in porcelain.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip().strip('"')
        if path and path not in paths:
            paths.append(path)
    return tuple(paths)


class GitRepoManager:
    def __init__(self, cwd: Path, *, logger: logging.Logger | None = None) -> None:
        self.cwd = cwd
        self._logger = logger or LOGGER

    def _git(self, *args: str, check: bool = True) -> str:
        return run(["git", "-C", str(self.cwd), *args], check=check)

    def is_clean(self) -> bool:
        dirty = _porcelain_paths(self._git("status", "--porcelain"))
        if dirty:
            log_event(
                self._logger,
                "git_tree_dirty",
                level=logging.WARNING,
                cwd=str(self.cwd),
                dirty_count=len(dirty),
                first_path=dirty[0],
            )
        return not dirty

    def is_up_to_date(self) -> bool:
        """True unless HEAD is behind its upstream.

        A failed fetch is logged and treated as up to date; there is nothing to
        compare against offline.
        """
        try:
            self._git("fetch", "origin", "--prune")
        except CommandError as exc:
            log_event(
                self._logger,
                "git_fetch_failed",
                level=logging.WARNING,
                cwd=str(self.cwd),
                error=str(exc).splitlines()[0],
            )
            return True
        behind = self.commits_behind()
        if behind:
            log_event(
                self._logger,
                "git_branch_behind",
                level=logging.WARNING,
                cwd=str(self.cwd),
                behind=behind,
            )
        return behind == 0

    def commits_behind(self) -> int:
        try:
            raw = self._git("rev-list", "--count", "HEAD..@{upstream}").strip()
        except CommandError:
            # No upstream configured.
            return 0
        return int(raw) if raw else 0

    def rebase(self) -> None:
        branch = self.current_branch()
        log_event(self._logger, "git_rebase", cwd=str(self.cwd), branch=branch)
        self._git("rebase", f"origin/{branch}")

    def stage_commit_push(self, message: str, *, force: bool = False) -> str:
        self._git("add", "-A")
        staged = self._git("diff", "--cached", "--name-only").strip()
        if not staged:
            raise RuntimeError("No staged changes to commit")
        log_event(
            self._logger,
            "git_commit",
            cwd=str(self.cwd),
            staged_count=len(staged.splitlines()),
        )
        self._git("commit", "-m", message)
        revision = self.head_revision()
        branch = self.current_branch()
        push_args = ["push", "-u", "origin", branch]
        if force:
            push_args.insert(1, "--force-with-lease")
        try:
            self._git(*push_args)
        except CommandError as exc:
            log_event(
                self._logger,
                "git_push_failed",
                level=logging.WARNING,
                cwd=str(self.cwd),
                branch=branch,
                error_type=type(exc).__name__,
            )
            raise
        log_event(self._logger, "git_pushed", branch=branch, revision=revision, force=force)
        return revision

    def head_revision(self) -> str:
        return self._git("rev-parse", "HEAD").strip()

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD").strip()

    def changed_files(self) -> tuple[str, ...]:
        return _porcelain_paths(self._git("status", "--porcelain"))

    def remote_url(self, remote: str = "origin") -> str | None:
        try:
            url = self._git("remote", "get-url", remote).strip()
        except CommandError:
            return None
        return url or None

    def github_repo(self) -> tuple[str, str] | None:
        url = self.remote_url()
        if url is None:
            return None
        return parse_github_remote(url)
