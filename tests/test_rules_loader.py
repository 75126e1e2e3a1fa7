from __future__ import annotations

from pathlib import Path

from bugfixbot.rules_loader import (
    GLOBAL_RULES,
    load_rules_context,
    relevant_rule_files,
    strip_front_matter,
)


def test_strip_front_matter() -> None:
    content = "---\ndescription: repo rules\nglobs: ['*']\n---\n\nUse tabs.\n"
    assert strip_front_matter(content) == "Use tabs."
    assert strip_front_matter("No front matter") == "No front matter"


def test_relevant_rule_files_orders_globals_first_and_dedupes() -> None:
    rules = relevant_rule_files(
        ["web/Button.tsx", "web/Card.jsx", "api/userHandler.ts", "lib/user-service.ts"]
    )

    assert rules[: len(GLOBAL_RULES)] == list(GLOBAL_RULES)
    assert rules[len(GLOBAL_RULES) :] == [
        "platform-ui.mdc",
        "backend--api-handlers.mdc",
        "backend--service-layer.mdc",
    ]


def test_load_rules_context_without_cursor_dir_is_empty(tmp_path: Path) -> None:
    assert load_rules_context(tmp_path, ["a.py"]) == ""


def test_load_rules_context_combines_guidelines_and_rules(tmp_path: Path) -> None:
    rules_dir = tmp_path / ".cursor" / "rules"
    rules_dir.mkdir(parents=True)
    (tmp_path / ".cursor" / "BUGBOT.md").write_text("Be strict about nulls.", encoding="utf-8")
    (rules_dir / "global--repo.mdc").write_text(
        "---\nalwaysApply: true\n---\nPrefer small functions.", encoding="utf-8"
    )
    (rules_dir / "platform-ui.mdc").write_text("Use the design system.", encoding="utf-8")
    (rules_dir / "backend--service-layer.mdc").write_text("Unused here.", encoding="utf-8")

    context = load_rules_context(tmp_path, ["web/Button.tsx"])

    guidelines, rules = context.split("\n\n---\n\n")
    assert guidelines == "## Project Review Guidelines (BUGBOT.md)\n\nBe strict about nulls."
    assert rules.startswith("## Project Rules\n\n### global--repo.mdc\n\nPrefer small functions.")
    assert "### platform-ui.mdc\n\nUse the design system." in rules
    assert "backend--service-layer" not in rules
