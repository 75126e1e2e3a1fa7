from __future__ import annotations

import argparse
from dataclasses import dataclass
import logging
from pathlib import Path
import sys

from bugfixbot.config import (
    CONFIG_FILENAMES,
    DEFAULT_CONFIG_TOML,
    AppConfig,
    ConfigError,
    load_config,
)
from bugfixbot.cursor_engines import CURSOR_COMMANDS_DIR, DEFAULT_COMMAND_TEMPLATES
from bugfixbot.cycle import CycleExecutor
from bugfixbot.fix_engine import create_engine
from bugfixbot.git_ops import GitRepoManager
from bugfixbot.github_gateway import (
    GitHubCommentSource,
    GitHubGateway,
    GitHubPollingError,
    github_auth_env,
    parse_repo_string,
)
from bugfixbot.loop import LoopController, PreflightError, run_single_cycle
from bugfixbot.models import CycleResult
from bugfixbot.observability import ROOT_LOGGER_NAME, VerboseMode, configure_logging
from bugfixbot.reviewers import GitHubReviewerStatusSource, ReviewerCompletionPoller
from bugfixbot.shell import CommandError
from bugfixbot.state import StateStore, default_state_dir, ensure_state_dir
from bugfixbot.status import StatusSnapshot, collect_status, format_status
from bugfixbot.status_tui import run_status_tui


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_STOPPED = 2
EXIT_INTERRUPTED = 130
_DEFAULT_BRANCHES = frozenset({"main", "master", "HEAD"})
_ROOT_LOGGER = logging.getLogger(ROOT_LOGGER_NAME)


@dataclass(frozen=True)
class Target:
    gateway: GitHubGateway
    pr_number: int


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bugfixbot",
        description="Turn review-bot comments on a pull request into committed fixes.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Log progress to stderr (-v for key events, -vv for everything)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser(
        "init", help="Write a default config, Cursor command templates, and the state dir"
    )
    init_parser.add_argument("--force", action="store_true", help="Overwrite existing files")
    init_parser.add_argument(
        "--skip-templates", action="store_true", help="Do not write .cursor/commands templates"
    )

    run_parser = subparsers.add_parser("run", help="Run a single fix cycle")
    _add_target_arguments(run_parser)

    watch_parser = subparsers.add_parser(
        "watch", help="Run fix cycles until the pull request is clean or a bound is hit"
    )
    _add_target_arguments(watch_parser)
    watch_parser.add_argument("--max-cycles", type=int, help="Override guardrails.max_cycles")
    watch_parser.add_argument(
        "--poll-interval",
        type=float,
        help="Override guardrails.poll_interval_seconds",
    )
    watch_parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Exit as soon as no comments remain instead of waiting for reviewers",
    )

    status_parser = subparsers.add_parser("status", help="Show session state and pending comments")
    _add_target_arguments(status_parser)
    status_parser.add_argument(
        "--live", action="store_true", help="Open a dashboard that refreshes periodically"
    )

    subparsers.add_parser("reset", help="Clear the stored session")

    return parser


def _add_target_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--pr", type=int, help="Pull request number")
    parser.add_argument("--repo", type=str, help="Repository as owner/name")
    parser.add_argument("--config", type=Path, help="Path to bugfixbot.toml")


def main() -> None:
    args = build_parser().parse_args()
    cwd = Path.cwd()
    verbose = _verbose_mode(getattr(args, "verbose", 0))
    state_dir = ensure_state_dir(default_state_dir(cwd)) if verbose else None
    logger = configure_logging(verbose, state_dir=state_dir)

    try:
        code = _dispatch(args, cwd, logger)
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        code = EXIT_INTERRUPTED
    except (ConfigError, PreflightError, CommandError, GitHubPollingError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        code = EXIT_FAILED
    raise SystemExit(code)


def _dispatch(args: argparse.Namespace, cwd: Path, logger: logging.Logger) -> int:
    if args.command == "init":
        return _cmd_init(cwd, force=bool(args.force), skip_templates=bool(args.skip_templates))
    if args.command == "reset":
        return _cmd_reset(cwd, logger)

    config = load_config(getattr(args, "config", None), cwd=cwd)
    if args.command == "run":
        return _cmd_run(config, args, cwd, logger)
    if args.command == "watch":
        return _cmd_watch(config, args, cwd, logger)
    if args.command == "status":
        return _cmd_status(config, args, cwd, logger)

    raise RuntimeError(f"Unknown command: {args.command}")


def _verbose_mode(count: int) -> VerboseMode | None:
    if count <= 0:
        return None
    if count == 1:
        return "low"
    return "high"


def exit_code_for(result: CycleResult) -> int:
    if result.status in {"complete", "pushed"}:
        return EXIT_OK
    if result.status == "stopped":
        return EXIT_STOPPED
    return EXIT_FAILED


def _cmd_init(cwd: Path, *, force: bool, skip_templates: bool) -> int:
    config_path = cwd / CONFIG_FILENAMES[0]
    if config_path.exists() and not force:
        print(f"Config file already exists: {config_path.name} (use --force to overwrite)")
    else:
        config_path.write_text(DEFAULT_CONFIG_TOML, encoding="utf-8")
        print(f"Created {config_path.name}")

    if not skip_templates:
        commands_dir = cwd / CURSOR_COMMANDS_DIR
        commands_dir.mkdir(parents=True, exist_ok=True)
        for name, template in DEFAULT_COMMAND_TEMPLATES.items():
            template_path = commands_dir / f"{name}.md"
            if template_path.exists() and not force:
                continue
            template_path.write_text(template, encoding="utf-8")
            print(f"Created {CURSOR_COMMANDS_DIR / template_path.name}")

    ensure_state_dir(default_state_dir(cwd))
    print("Created .bugfixbot/ (gitignored)")
    print("")
    print("Next steps:")
    print(f"  1. Edit {config_path.name} to configure your project")
    print("  2. Run: bugfixbot run --pr <number>")
    return EXIT_OK


def _cmd_reset(cwd: Path, logger: logging.Logger) -> int:
    with StateStore.for_directory(cwd, logger=logger) as store:
        store.clear()
    print("Session state cleared.")
    return EXIT_OK


def _resolve_target(
    config: AppConfig,
    args: argparse.Namespace,
    git: GitRepoManager,
    logger: logging.Logger = _ROOT_LOGGER,
) -> Target:
    repo_arg = getattr(args, "repo", None) or config.github.repo
    if repo_arg:
        try:
            owner, name = parse_repo_string(repo_arg)
        except ValueError as exc:
            raise PreflightError(str(exc)) from exc
    else:
        inferred = git.github_repo()
        if inferred is None:
            raise PreflightError(
                "Could not determine repository. Use --repo owner/name or set github.repo"
            )
        owner, name = inferred

    gateway = GitHubGateway(
        owner=owner, name=name, env=github_auth_env(config.github), logger=logger
    )
    pr_number = getattr(args, "pr", None) or config.github.pr
    if pr_number is None:
        branch = git.current_branch()
        if branch not in _DEFAULT_BRANCHES:
            pr_number = gateway.find_pull_request_by_head(branch)
    if pr_number is None:
        raise PreflightError("Could not determine PR number. Use --pr N or set github.pr")
    return Target(gateway=gateway, pr_number=pr_number)


def _build_executor(
    config: AppConfig,
    cwd: Path,
    git: GitRepoManager,
    target: Target,
    store: StateStore,
    logger: logging.Logger,
) -> CycleExecutor:
    return CycleExecutor(
        config=config,
        store=store,
        comments=GitHubCommentSource(
            target.gateway, target.pr_number, config.github, logger=logger
        ),
        engine=create_engine(config.fix, cwd, git, logger=logger),
        git=git,
        cwd=cwd,
        logger=logger,
    )


def _print_result(label: str, result: CycleResult) -> None:
    line = f"{label}: {result.status}"
    if result.reason:
        line = f"{line} - {result.reason}"
    if result.revision:
        line = f"{line} ({result.revision[:7]})"
    print(line)


def _cmd_run(
    config: AppConfig, args: argparse.Namespace, cwd: Path, logger: logging.Logger
) -> int:
    git = GitRepoManager(cwd, logger=logger)
    target = _resolve_target(config, args, git, logger)
    print(f"Running one cycle for {target.gateway.full_name}#{target.pr_number}")
    with StateStore.for_directory(cwd, logger=logger) as store:
        store.open(target.pr_number)
        executor = _build_executor(config, cwd, git, target, store, logger)
        result = run_single_cycle(executor, git, logger=logger)
    _print_result("Cycle", result)
    return exit_code_for(result)


def _cmd_watch(
    config: AppConfig, args: argparse.Namespace, cwd: Path, logger: logging.Logger
) -> int:
    git = GitRepoManager(cwd, logger=logger)
    target = _resolve_target(config, args, git, logger)
    max_cycles = args.max_cycles if args.max_cycles is not None else config.guardrails.max_cycles
    poll_interval = (
        args.poll_interval
        if args.poll_interval is not None
        else config.guardrails.poll_interval_seconds
    )
    print(f"Watching {target.gateway.full_name}#{target.pr_number}")
    print(f"Max cycles: {max_cycles}, poll interval: {poll_interval:g}s")
    if args.no_wait:
        print("No-wait mode: exiting once no comments remain")

    with StateStore.for_directory(cwd, logger=logger) as store:
        store.open(target.pr_number)
        controller = LoopController(
            executor=_build_executor(config, cwd, git, target, store, logger),
            git=git,
            guardrails=config.guardrails,
            poller=ReviewerCompletionPoller(
                GitHubReviewerStatusSource(target.gateway, logger=logger),
                config.reviewers,
                logger=logger,
            ),
            wait_for_reviewers=not args.no_wait,
            auto_rebase=config.git.auto_rebase,
            max_cycles=max_cycles,
            poll_interval_seconds=poll_interval,
            on_cycle=lambda result, number: _print_result(f"Cycle {number}", result),
            logger=logger,
        )
        result = controller.run()
    _print_result("Watch finished", result)
    return exit_code_for(result)


def _cmd_status(
    config: AppConfig, args: argparse.Namespace, cwd: Path, logger: logging.Logger
) -> int:
    git = GitRepoManager(cwd, logger=logger)
    target = _resolve_target(config, args, git, logger)
    comments = GitHubCommentSource(
        target.gateway, target.pr_number, config.github, logger=logger
    )
    with StateStore.for_directory(cwd, logger=logger) as store:

        def load_snapshot() -> StatusSnapshot:
            return collect_status(
                repo_full_name=target.gateway.full_name,
                pr_number=target.pr_number,
                store=store,
                comments=comments,
            )

        if args.live:
            run_status_tui(
                load_snapshot=load_snapshot,
                refresh_seconds=config.guardrails.poll_interval_seconds or 30.0,
            )
            return EXIT_OK
        print(format_status(load_snapshot()))
    return EXIT_OK
