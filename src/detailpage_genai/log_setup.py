"""Centralised logging configuration.

Call configure() once at startup (the app lifespan does it).
All modules then use logging.getLogger(__name__) normally.

Output:
  console           INFO level (or LOG_LEVEL), compact single-line format
  <log_dir>/app.log DEBUG level, full format, rotating (5 x 5 MB)
"""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

from detailpage_genai.config import settings

_CONSOLE_FMT = "%(asctime)s  %(levelname)-7s  %(name)s - %(message)s"
_FILE_FMT = "%(asctime)s  %(levelname)-7s  %(name)-28s  %(filename)s:%(lineno)d - %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"

_NOISY = ("httpx", "httpcore", "openai", "google_genai", "uvicorn.access", "PIL")


def configure(level: str | None = None, log_dir: str | Path | None = None) -> None:
    """Set up console + rotating file handlers. Safe to call multiple times."""
    root = logging.getLogger()
    if getattr(root, "_detailpage_configured", False):
        return

    level = level or settings.log_level
    logs_dir = Path(log_dir or settings.log_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    root.setLevel(logging.DEBUG)  # lowest gate; handlers apply their own levels

    ch = logging.StreamHandler()
    ch.setLevel(getattr(logging, level.upper(), logging.INFO))
    ch.setFormatter(logging.Formatter(_CONSOLE_FMT, datefmt=_DATE_FMT))
    root.addHandler(ch)

    fh = logging.handlers.RotatingFileHandler(
        logs_dir / "app.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(_FILE_FMT, datefmt=_DATE_FMT))
    root.addHandler(fh)

    for noisy in _NOISY:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    root._detailpage_configured = True  # type: ignore[attr-defined]
