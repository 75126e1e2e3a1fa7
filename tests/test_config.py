from __future__ import annotations

from pathlib import Path

import pytest

from bugfixbot import config
from bugfixbot.config import AppConfig, ConfigError, load_config, parse_config


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    cfg = load_config(cwd=tmp_path)

    assert cfg == AppConfig()
    assert cfg.github.auth == "gh"
    assert cfg.fix.engine == "cursor-cli"
    assert cfg.guardrails.max_cycles == 5
    assert cfg.guardrails.max_files_per_cycle == 10
    assert cfg.guardrails.max_lines_per_cycle == 500
    assert [reviewer.name for reviewer in cfg.reviewers] == ["bugbot"]


def test_explicit_missing_path_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Config file not found"):
        load_config(tmp_path / "nope.toml")


def test_load_config_full_file(tmp_path: Path) -> None:
    _write(
        tmp_path / "bugfixbot.toml",
        """
[github]
repo = "acme/widgets"
pr = 42
auth = "token"
token = "t0k"
bot_authors = ["Cursor[bot]"]
resolve_threads = true

[[reviewers]]
name = "bugbot"
check_patterns = ["bugbot"]
trigger_phrase = "bugbot run"

[[reviewers]]
name = "lint"

[fix]
engine = "codex"
timeout_seconds = 60
acknowledge_unchanged = false

[fix.codex]
model = "o3"
extra_args = ["--full-auto"]

[verification]
commands = ["pytest -q", "ruff check ."]
stop_on_failure = false

[guardrails]
max_cycles = 3
poll_interval_seconds = 10
max_poll_interval_seconds = 40

[git]
commit_template = "fix: cycle {cycle}"
auto_rebase = true
""",
    )

    cfg = load_config(cwd=tmp_path)

    assert cfg.github.repo == "acme/widgets"
    assert cfg.github.pr == 42
    assert cfg.github.token == "t0k"
    assert cfg.github.resolve_threads is True
    assert cfg.github.is_bot_author("cursor[BOT]") is True
    assert cfg.github.is_bot_author("alice") is False
    assert cfg.reviewers[0].trigger_phrase == "bugbot run"
    assert cfg.reviewers[1].check_patterns == ("lint",)
    assert cfg.fix.engine == "codex"
    assert cfg.fix.timeout_seconds == 60
    assert cfg.fix.acknowledge_unchanged is False
    assert cfg.fix.codex.model == "o3"
    assert cfg.fix.codex.extra_args == ("--full-auto",)
    assert cfg.verification.commands == ("pytest -q", "ruff check .")
    assert cfg.verification.stop_on_failure is False
    assert cfg.guardrails.max_cycles == 3
    assert cfg.guardrails.poll_interval_seconds == 10.0
    assert cfg.git.auto_rebase is True
    assert cfg.git.commit_message(2) == "fix: cycle 2"


def test_hidden_config_filename_is_found(tmp_path: Path) -> None:
    _write(tmp_path / ".bugfixbot.toml", "[guardrails]\nmax_cycles = 9\n")

    assert config.find_config_file(tmp_path) == tmp_path / ".bugfixbot.toml"
    assert load_config(cwd=tmp_path).guardrails.max_cycles == 9


def test_invalid_toml_raises_config_error(tmp_path: Path) -> None:
    path = _write(tmp_path / "bugfixbot.toml", "[github\n")

    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(path)


@pytest.mark.parametrize(
    ("data", "message"),
    [
        ({"github": {"auth": "ssh"}}, "github.auth must be one of"),
        ({"github": {"auth": "token"}}, "github.token is required"),
        ({"github": {"repo": "no-slash"}}, "owner/name"),
        ({"github": {"bot_authors": []}}, "at least one login"),
        ({"github": {"pr": 0}}, "pr must be an integer >= 1"),
        ({"reviewers": {"name": "x"}}, "array of tables"),
        ({"reviewers": [{"name": "a"}, {"name": "a"}]}, "Duplicate reviewer name"),
        ({"fix": {"engine": "vim"}}, "fix.engine must be one of"),
        ({"fix": {"timeout_seconds": 0}}, "fix.timeout_seconds must be >= 1"),
        ({"fix": {"max_prompt_tokens": 0}}, "fix.max_prompt_tokens must be >= 1"),
        ({"verification": {"commands": "pytest"}}, "commands must be a list"),
        ({"guardrails": {"max_cycles": 0}}, "max_cycles must be >= 1"),
        ({"guardrails": {"max_files_per_cycle": 0}}, "max_files_per_cycle must be >= 1"),
        ({"guardrails": {"backoff_multiplier": 0.5}}, "backoff_multiplier must be >= 1"),
        (
            {"guardrails": {"poll_interval_seconds": 60, "max_poll_interval_seconds": 30}},
            "max_poll_interval_seconds must be >=",
        ),
        ({"git": {"commit_template": "fix stuff"}}, "placeholder"),
        ({"git": {"push_force": "yes"}}, "push_force must be a boolean"),
        ({"github": "acme"}, r"\[github\] must be a TOML table"),
    ],
)
def test_parse_config_rejects_invalid_values(data: dict[str, object], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        parse_config(data)


def test_default_config_toml_parses_to_defaults(tmp_path: Path) -> None:
    path = _write(tmp_path / "bugfixbot.toml", config.DEFAULT_CONFIG_TOML)

    assert load_config(path) == AppConfig()


def test_invalid_reviewer_check_pattern_fails_at_load_time(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "bugfixbot.toml",
        '[[reviewers]]\nname = "bugbot"\ncheck_patterns = ["bugbot("]\n',
    )

    with pytest.raises(ConfigError, match="reviewer 'bugbot' has an invalid check pattern"):
        load_config(path)
