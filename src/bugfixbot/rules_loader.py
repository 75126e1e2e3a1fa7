from __future__ import annotations

from collections.abc import Iterable
import logging
from pathlib import Path
import re

from bugfixbot.observability import log_event


LOGGER = logging.getLogger("bugfixbot.rules_loader")

GLOBAL_RULES: tuple[str, ...] = ("global--code-review.mdc", "global--repo.mdc")
FILE_TYPE_RULES: tuple[tuple[str, str], ...] = (
    (".tsx", "platform-ui.mdc"),
    (".jsx", "platform-ui.mdc"),
    ("Handler.ts", "backend--api-handlers.mdc"),
    ("-handler.ts", "backend--api-handlers.mdc"),
    ("entity-models", "backend--dynamo-db.mdc"),
    ("repository", "backend--dynamo-db.mdc"),
    ("-cdk", "backend--cdk-infrastructure.mdc"),
    ("service", "backend--service-layer.mdc"),
)
_FRONT_MATTER_RE = re.compile(r"^---[\s\S]*?---\n?")
_SECTION_SEPARATOR = "\n\n---\n\n"


def strip_front_matter(content: str) -> str:
    return _FRONT_MATTER_RE.sub("", content, count=1).strip()


def relevant_rule_files(file_paths: Iterable[str]) -> list[str]:
    """Global rules first, then file-type rules in first-matched order."""
    rules = list(GLOBAL_RULES)
    for file_path in file_paths:
        for pattern, rule_file in FILE_TYPE_RULES:
            if pattern in file_path and rule_file not in rules:
                rules.append(rule_file)
    return rules


def _read_if_exists(path: Path, logger: logging.Logger) -> str | None:
    if not path.is_file():
        return None
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        log_event(
            logger,
            "rules_file_unreadable",
            level=logging.WARNING,
            path=str(path),
            error=str(exc),
        )
        return None


def load_rules_context(
    cwd: Path,
    file_paths: Iterable[str],
    *,
    logger: logging.Logger | None = None,
) -> str:
    """Project review guidance from ``.cursor/`` relevant to ``file_paths``.

    Returns an empty string when the project has no guidance files.
    """
    log = logger or LOGGER
    cursor_dir = cwd / ".cursor"
    rules_dir = cursor_dir / "rules"
    sections: list[str] = []

    guidelines = _read_if_exists(cursor_dir / "BUGBOT.md", log)
    if guidelines:
        sections.append(f"## Project Review Guidelines (BUGBOT.md)\n\n{guidelines}")

    loaded: list[str] = []
    if rules_dir.is_dir():
        for rule_name in relevant_rule_files(file_paths):
            content = _read_if_exists(rules_dir / rule_name, log)
            if content:
                loaded.append(f"### {rule_name}\n\n{strip_front_matter(content)}")
    if loaded:
        sections.append("## Project Rules\n\n" + "\n\n".join(loaded))

    log_event(
        log,
        "rules_context_loaded",
        has_guidelines=guidelines is not None,
        rule_count=len(loaded),
    )
    return _SECTION_SEPARATOR.join(sections)

