"""Structured ``event=<name> key=value`` logging for a bugfixbot run.

``configure_logging`` returns the run logger; the CLI hands it to every
component it builds instead of each component reaching for global state.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal


ROOT_LOGGER_NAME: Final[str] = "bugfixbot"
LOGS_DIRNAME: Final[str] = "logs"
_VALUE_LIMIT: Final[int] = 120
_LINE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s %(message)s"

# What a `-v` run shows. Warnings and errors always pass.
KEY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "cycle_started",
        "cycle_finished",
        "fix_engine_started",
        "fix_engine_finished",
        "verification_command_finished",
        "git_pushed",
        "loop_sleeping",
        "loop_terminated",
        "reviewers_pending",
    }
)

VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: VerboseMode | None, *, state_dir: Path | None = None
) -> logging.Logger:
    """Reset the ``bugfixbot`` logger for this run and return it.

    Quiet runs get a NullHandler and a level above CRITICAL so nothing reaches
    the root logger. With a ``state_dir`` the run also appends to
    ``<state_dir>/logs/<utc-date>.log``.
    """
    if verbose not in (None, "low", "high"):
        raise ValueError(f"Unsupported verbose mode: {verbose!r}")

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = False

    if verbose is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return logger

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        handlers.append(logging.FileHandler(run_log_path(state_dir), encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_LINE_FORMAT))
        if verbose == "low":
            handler.addFilter(_key_events_only)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


def run_log_path(state_dir: Path) -> Path:
    logs_dir = state_dir / LOGS_DIRNAME
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir / f"{datetime.now(timezone.utc):%Y-%m-%d}.log"


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: object
) -> None:
    logger.log(level, format_event(event, fields), extra={"event": event})


def format_event(event: str, fields: Mapping[str, object]) -> str:
    pairs = [("event", event), *sorted(fields.items())]
    return " ".join(f"{key}={_render(value)}" for key, value in pairs)


def _render(value: object) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, (list, tuple)):
        text = ",".join(str(item) for item in value)
    elif isinstance(value, (int, float, str, Path)):
        text = str(value)
    else:
        return f"<{type(value).__name__}>"
    text = " ".join(text.split()) or "<empty>"
    if len(text) > _VALUE_LIMIT:
        text = f"{text[:_VALUE_LIMIT]}..."
    if " " in text or "=" in text:
        return json.dumps(text)
    return text


def _key_events_only(record: logging.LogRecord) -> bool:
    if record.levelno >= logging.WARNING:
        return True
    return getattr(record, "event", None) in KEY_EVENTS
