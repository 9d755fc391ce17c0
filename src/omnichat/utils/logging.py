"""Logging bootstrap for the omnichat command line.

Records go to a size-capped file (``~/.omnichat/omnichat.log`` unless told
otherwise) and, in debug mode, to stderr so they never interleave with a reply
streamed to stdout. API keys are masked before any handler formats a record.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
from pathlib import Path

__all__ = ["SecretMaskingFilter", "get_log_path", "resolve_level", "setup_logging"]

DEFAULT_LOG_FILE = Path.home() / ".omnichat" / "omnichat.log"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# These log every request at DEBUG.
_TRANSPORT_LOGGERS = ("asyncio", "httpx", "httpcore", "openai")
_SECRET_PATTERN = re.compile(r"(Bearer\s+|sk-)[A-Za-z0-9._\-]{4,}")

_CONFIGURED = False
_LOG_PATH: Path | None = None


class SecretMaskingFilter(logging.Filter):
    """Rewrite bearer tokens and ``sk-`` keys in a record's message to ``***``."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = _SECRET_PATTERN.sub(lambda match: f"{match.group(1)}***", message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def resolve_level(level: int | str | None = None, *, default: int = logging.INFO) -> int:
    """Turn ``level`` into a numeric logging level.

    Without an explicit level, ``OMNICHAT_LOG_LEVEL`` is consulted; an
    unrecognised value there falls back to ``default``. An unrecognised
    explicit name raises ``ValueError``.
    """

    if isinstance(level, int):
        return level
    if level is not None:
        numeric = _level_from_name(level)
        if numeric is None:
            raise ValueError(f"Unknown log level: {level!r}")
        return numeric
    from_env = os.environ.get("OMNICHAT_LOG_LEVEL", "").strip()
    if not from_env:
        return default
    numeric = _level_from_name(from_env)
    if numeric is None:
        logging.getLogger(__name__).warning("Ignoring OMNICHAT_LOG_LEVEL=%r", from_env)
        return default
    return numeric


def setup_logging(
    level: int | str | None = None,
    *,
    log_file: Path | str | None = None,
    console: bool = True,
    file: bool = True,
    max_bytes: int = 2_000_000,
    backup_count: int = 2,
    force: bool = False,
) -> Path | None:
    """Install omnichat's handlers on the root logger.

    ``log_file`` falls back to ``OMNICHAT_LOG_FILE`` and then
    :data:`DEFAULT_LOG_FILE`. Repeated calls are ignored unless ``force`` is
    set. Returns the file being written, or ``None`` when file output is off.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force:
        return _LOG_PATH

    numeric_level = resolve_level(level)
    handlers: list[logging.Handler] = []
    path = _log_file_path(log_file) if file else None
    if path is not None:
        handlers.append(_rotating_handler(path, max_bytes, backup_count))
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))

    formatter = logging.Formatter(LOG_FORMAT)
    masking = SecretMaskingFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(masking)

    if handlers:
        logging.basicConfig(level=numeric_level, handlers=handlers, force=True)
    else:
        logging.getLogger().setLevel(numeric_level)
    logging.captureWarnings(True)
    _quiet_transport_loggers(numeric_level)

    _CONFIGURED = True
    _LOG_PATH = path
    return path


def get_log_path() -> Path | None:
    return _LOG_PATH


def _level_from_name(name: str) -> int | None:
    numeric = logging.getLevelName(name.strip().upper())
    return numeric if isinstance(numeric, int) else None


def _log_file_path(log_file: Path | str | None) -> Path:
    candidate = log_file or os.environ.get("OMNICHAT_LOG_FILE") or DEFAULT_LOG_FILE
    path = Path(candidate).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _rotating_handler(path: Path, max_bytes: int, backup_count: int) -> logging.Handler:
    return logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")


def _quiet_transport_loggers(root_level: int) -> None:
    floor = max(root_level, logging.WARNING)
    for name in _TRANSPORT_LOGGERS:
        logging.getLogger(name).setLevel(floor)
