"""
Logging bootstrap for the headcheck controller.

Two rotating files are written under ``log_dir``:

- ``headcheck-runtime.log``  everything at ``level``
- ``headcheck-liveness.log`` session and timer records only, with millisecond
  timestamps so hold counts and step/capture delays can be read off the log

Per-tick pose lines are DEBUG records of ``headcheck.liveness_session``;
``liveness_level="DEBUG"`` turns them on without making the rest of the
service verbose.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

LIVENESS_LOGGERS = (
    "headcheck.liveness_session",
    "headcheck.timers",
    "headcheck.pose",
)

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = {
    "absl": "WARNING",
    "uvicorn.access": "WARNING",
}


def _rotating_file(path: Path, formatter: str, level: str, retention_days: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.TimedRotatingFileHandler",
        "formatter": formatter,
        "level": level,
        "filename": str(path),
        "when": "midnight",
        "backupCount": max(int(retention_days), 1),
        "utc": True,
        "delay": True,
        "encoding": "utf-8",
    }


def configure_logging(
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    retention_days: int = 14,
    *,
    liveness_level: Optional[str] = None,
    module_levels: Optional[Mapping[str, str]] = None,
) -> Path:
    """Console plus daily-rotated runtime and liveness logs; returns the log directory."""

    if log_dir is None:
        log_dir = Path(__file__).resolve().parents[2] / "logs"
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    level = level.upper()
    liveness_level = (liveness_level or level).upper()

    loggers: Dict[str, Dict[str, Any]] = {name: {"level": lvl} for name, lvl in QUIET_LOGGERS.items()}
    for name in LIVENESS_LOGGERS:
        loggers[name] = {"level": liveness_level, "handlers": ["liveness_file"]}
    for name, lvl in (module_levels or {}).items():
        loggers.setdefault(name, {})["level"] = lvl.upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                },
                "timing": {
                    "format": "%(asctime)s.%(msecs)03d | %(levelname)-7s | %(name)s | %(message)s",
                    "datefmt": "%H:%M:%S",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": level,
                },
                "runtime_file": _rotating_file(log_dir / "headcheck-runtime.log", "default", level, retention_days),
                "liveness_file": _rotating_file(
                    log_dir / "headcheck-liveness.log", "timing", liveness_level, retention_days
                ),
            },
            "loggers": loggers,
            "root": {"level": level, "handlers": ["console", "runtime_file"]},
        }
    )
    logging.getLogger(__name__).debug("Logging configured (level=%s, liveness=%s, dir=%s)", level, liveness_level, log_dir)
    return log_dir


__all__ = ["configure_logging", "LIVENESS_LOGGERS"]
