from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import re
import tomllib
from typing import Literal, cast


AuthMethod = Literal["gh", "env", "token"]
FixEngineKind = Literal["cursor-cli", "cursor-command", "codex"]

CONFIG_FILENAMES: tuple[str, ...] = ("bugfixbot.toml", ".bugfixbot.toml")
DEFAULT_BOT_AUTHORS: tuple[str, ...] = ("cursor-bot", "bugbot", "cursor[bot]")
DEFAULT_COMMIT_TEMPLATE = "chore(bugbot): fix review findings [cycle {cycle}]"
DEFAULT_ACKNOWLEDGE_MESSAGE = (
    "No code changes were needed for this comment; it appears to be addressed already."
)
DEFAULT_REVIEWER_CHECK_PATTERNS: tuple[str, ...] = (
    "bugbot",
    "cursor.*review",
    "cursor.*bot",
    "code.*review.*bot",
)
_AUTH_METHODS: frozenset[str] = frozenset({"gh", "env", "token"})
_FIX_ENGINES: frozenset[str] = frozenset({"cursor-cli", "cursor-command", "codex"})


@dataclass(frozen=True)
class GitHubConfig:
    repo: str | None = None
    pr: int | None = None
    auth: AuthMethod = "gh"
    token: str | None = None
    bot_authors: tuple[str, ...] = DEFAULT_BOT_AUTHORS
    resolve_threads: bool = False

    def is_bot_author(self, login: str) -> bool:
        normalized = login.strip().lower()
        if not normalized:
            return False
        return normalized in {author.lower() for author in self.bot_authors}


@dataclass(frozen=True)
class ReviewerConfig:
    name: str
    check_patterns: tuple[str, ...]
    trigger_phrase: str | None = None


@dataclass(frozen=True)
class CodexConfig:
    model: str | None = None
    sandbox: str | None = None
    profile: str | None = None
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class FixConfig:
    engine: FixEngineKind = "cursor-cli"
    command: str = "bugbot_fix"
    instructions: str | None = None
    timeout_seconds: int = 300
    acknowledge_unchanged: bool = True
    acknowledge_message: str = DEFAULT_ACKNOWLEDGE_MESSAGE
    max_prompt_tokens: int = 32000
    codex: CodexConfig = field(default_factory=CodexConfig)


@dataclass(frozen=True)
class VerificationConfig:
    commands: tuple[str, ...] = ()
    timeout_seconds: int = 300
    stop_on_failure: bool = True


@dataclass(frozen=True)
class GuardrailsConfig:
    max_cycles: int = 5
    max_files_per_cycle: int = 10
    max_lines_per_cycle: int = 500
    poll_interval_seconds: float = 30.0
    backoff_multiplier: float = 1.5
    max_poll_interval_seconds: float = 300.0


@dataclass(frozen=True)
class GitConfig:
    commit_template: str = DEFAULT_COMMIT_TEMPLATE
    auto_rebase: bool = False
    push_force: bool = False

    def commit_message(self, cycle: int) -> str:
        return self.commit_template.replace("{cycle}", str(cycle))


def _default_reviewers() -> tuple[ReviewerConfig, ...]:
    return (ReviewerConfig(name="bugbot", check_patterns=DEFAULT_REVIEWER_CHECK_PATTERNS),)


@dataclass(frozen=True)
class AppConfig:
    github: GitHubConfig = field(default_factory=GitHubConfig)
    reviewers: tuple[ReviewerConfig, ...] = field(default_factory=_default_reviewers)
    fix: FixConfig = field(default_factory=FixConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    guardrails: GuardrailsConfig = field(default_factory=GuardrailsConfig)
    git: GitConfig = field(default_factory=GitConfig)


class ConfigError(ValueError):
    pass


def find_config_file(cwd: Path) -> Path | None:
    for filename in CONFIG_FILENAMES:
        candidate = cwd / filename
        if candidate.is_file():
            return candidate
    return None


def load_config(path: Path | None = None, *, cwd: Path | None = None) -> AppConfig:
    """Load config from ``path``, or the first config file found in ``cwd``.

    A missing file yields the defaults; every key is optional.
    """
    resolved = path
    if resolved is None:
        resolved = find_config_file(cwd or Path.cwd())
        if resolved is None:
            return AppConfig()
    elif not resolved.is_file():
        raise ConfigError(f"Config file not found: {resolved}")

    with resolved.open("rb") as fh:
        try:
            data = tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {resolved}: {exc}") from exc
    return parse_config(cast(dict[str, object], data))


def parse_config(data: dict[str, object]) -> AppConfig:
    github = _parse_github_config(_optional_table(data, "github"))
    reviewers = _parse_reviewers(data.get("reviewers"))
    fix = _parse_fix_config(_optional_table(data, "fix"))
    verification = _parse_verification_config(_optional_table(data, "verification"))
    guardrails = _parse_guardrails_config(_optional_table(data, "guardrails"))
    git = _parse_git_config(_optional_table(data, "git"))
    return AppConfig(
        github=github,
        reviewers=reviewers,
        fix=fix,
        verification=verification,
        guardrails=guardrails,
        git=git,
    )


def _parse_github_config(data: dict[str, object]) -> GitHubConfig:
    auth = _str_with_default(data, "auth", "gh").strip().lower()
    if auth not in _AUTH_METHODS:
        raise ConfigError("github.auth must be one of: gh, env, token")
    token = _optional_str(data, "token")
    if auth == "token" and token is None:
        raise ConfigError('github.token is required when github.auth = "token"')
    repo = _optional_str(data, "repo")
    if repo is not None and repo.count("/") != 1:
        raise ConfigError(f"github.repo must look like owner/name, got {repo!r}")
    bot_authors = _tuple_of_str_with_default(data, "bot_authors", DEFAULT_BOT_AUTHORS)
    if not bot_authors:
        raise ConfigError("github.bot_authors must contain at least one login")
    return GitHubConfig(
        repo=repo,
        pr=_optional_positive_int(data, "pr"),
        auth=cast(AuthMethod, auth),
        token=token,
        bot_authors=bot_authors,
        resolve_threads=_bool_with_default(data, "resolve_threads", False),
    )


def _parse_reviewers(value: object) -> tuple[ReviewerConfig, ...]:
    if value is None:
        return _default_reviewers()
    if not isinstance(value, list):
        raise ConfigError("[[reviewers]] must be an array of tables")
    reviewers: list[ReviewerConfig] = []
    seen: set[str] = set()
    for item in value:
        table = _require_table_value(item, table_name="[[reviewers]]")
        name = _require_str(table, "name")
        if name in seen:
            raise ConfigError(f"Duplicate reviewer name {name!r}")
        seen.add(name)
        patterns = _tuple_of_str_with_default(table, "check_patterns", (name,))
        if not patterns:
            raise ConfigError(f"reviewer {name!r} must define at least one check pattern")
        for pattern in patterns:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ConfigError(
                    f"reviewer {name!r} has an invalid check pattern {pattern!r}: {exc}"
                ) from exc
        reviewers.append(
            ReviewerConfig(
                name=name,
                check_patterns=patterns,
                trigger_phrase=_optional_str(table, "trigger_phrase"),
            )
        )
    return tuple(reviewers)


def _parse_fix_config(data: dict[str, object]) -> FixConfig:
    engine = _str_with_default(data, "engine", "cursor-cli").strip().lower()
    if engine not in _FIX_ENGINES:
        raise ConfigError("fix.engine must be one of: codex, cursor-cli, cursor-command")
    timeout_seconds = _int_with_default(data, "timeout_seconds", 300)
    if timeout_seconds < 1:
        raise ConfigError("fix.timeout_seconds must be >= 1")
    max_prompt_tokens = _int_with_default(data, "max_prompt_tokens", 32000)
    if max_prompt_tokens < 1:
        raise ConfigError("fix.max_prompt_tokens must be >= 1")
    codex_data = _optional_table(data, "codex")
    return FixConfig(
        engine=cast(FixEngineKind, engine),
        command=_str_with_default(data, "command", "bugbot_fix"),
        instructions=_optional_str(data, "instructions"),
        timeout_seconds=timeout_seconds,
        acknowledge_unchanged=_bool_with_default(data, "acknowledge_unchanged", True),
        acknowledge_message=_str_with_default(
            data, "acknowledge_message", DEFAULT_ACKNOWLEDGE_MESSAGE
        ),
        max_prompt_tokens=max_prompt_tokens,
        codex=CodexConfig(
            model=_optional_str(codex_data, "model"),
            sandbox=_optional_str(codex_data, "sandbox"),
            profile=_optional_str(codex_data, "profile"),
            extra_args=_tuple_of_str_with_default(codex_data, "extra_args", ()),
        ),
    )


def _parse_verification_config(data: dict[str, object]) -> VerificationConfig:
    timeout_seconds = _int_with_default(data, "timeout_seconds", 300)
    if timeout_seconds < 1:
        raise ConfigError("verification.timeout_seconds must be >= 1")
    return VerificationConfig(
        commands=_tuple_of_str_with_default(data, "commands", ()),
        timeout_seconds=timeout_seconds,
        stop_on_failure=_bool_with_default(data, "stop_on_failure", True),
    )


def _parse_guardrails_config(data: dict[str, object]) -> GuardrailsConfig:
    guardrails = GuardrailsConfig(
        max_cycles=_int_with_default(data, "max_cycles", 5),
        max_files_per_cycle=_int_with_default(data, "max_files_per_cycle", 10),
        max_lines_per_cycle=_int_with_default(data, "max_lines_per_cycle", 500),
        poll_interval_seconds=_number_with_default(data, "poll_interval_seconds", 30.0),
        backoff_multiplier=_number_with_default(data, "backoff_multiplier", 1.5),
        max_poll_interval_seconds=_number_with_default(data, "max_poll_interval_seconds", 300.0),
    )
    if guardrails.max_cycles < 1:
        raise ConfigError("guardrails.max_cycles must be >= 1")
    if guardrails.max_files_per_cycle < 1:
        raise ConfigError("guardrails.max_files_per_cycle must be >= 1")
    if guardrails.max_lines_per_cycle < 1:
        raise ConfigError("guardrails.max_lines_per_cycle must be >= 1")
    if guardrails.poll_interval_seconds < 0:
        raise ConfigError("guardrails.poll_interval_seconds must be >= 0")
    if guardrails.backoff_multiplier < 1:
        raise ConfigError("guardrails.backoff_multiplier must be >= 1")
    if guardrails.max_poll_interval_seconds < guardrails.poll_interval_seconds:
        raise ConfigError(
            "guardrails.max_poll_interval_seconds must be >= guardrails.poll_interval_seconds"
        )
    return guardrails


def _parse_git_config(data: dict[str, object]) -> GitConfig:
    template = _str_with_default(data, "commit_template", DEFAULT_COMMIT_TEMPLATE)
    if "{cycle}" not in template:
        raise ConfigError("git.commit_template must contain a {cycle} placeholder")
    return GitConfig(
        commit_template=template,
        auto_rebase=_bool_with_default(data, "auto_rebase", False),
        push_force=_bool_with_default(data, "push_force", False),
    )


def _optional_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if value is None:
        return {}
    return _require_table_value(value, table_name=f"[{key}]")


def _require_table_value(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{table_name} must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _number_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{key} must be a list of non-empty strings")
        out.append(item)
    return tuple(out)


def _optional_positive_int(data: dict[str, object], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{key} must be an integer >= 1 if provided")
    return value


DEFAULT_CONFIG_TOML = """\
# bugfixbot configuration. Every key is optional.

[github]
# repo = "owner/name"        # inferred from the origin remote when omitted
# pr = 123                   # inferred from the current branch when omitted
auth = "gh"                  # gh | env | token
bot_authors = ["cursor-bot", "bugbot", "cursor[bot]"]
resolve_threads = false

[[reviewers]]
name = "bugbot"
check_patterns = ["bugbot", "cursor.*review", "cursor.*bot", "code.*review.*bot"]
# trigger_phrase = "bugbot run"

[fix]
engine = "cursor-cli"        # cursor-cli | cursor-command | codex
command = "bugbot_fix"
timeout_seconds = 300
acknowledge_unchanged = true
max_prompt_tokens = 32000      # larger prompts fall back to a one-line-per-comment form

[verification]
commands = []
timeout_seconds = 300
stop_on_failure = true

[guardrails]
max_cycles = 5
max_files_per_cycle = 10
max_lines_per_cycle = 500
poll_interval_seconds = 30
backoff_multiplier = 1.5
max_poll_interval_seconds = 300

[git]
commit_template = "chore(bugbot): fix review findings [cycle {cycle}]"
auto_rebase = false
push_force = false
"""
