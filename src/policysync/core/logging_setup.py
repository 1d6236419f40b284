"""
Central logging for policysync.

- Console handler on stderr: INFO by default
- Timed rotated file handler: DEBUG (logs/app.log, daily rotation, UTC)
- Per-run file handler: DEBUG (logs/YYYY-MM-DD/<action>_<run_id>.log)
- Secret redaction in messages and %-args (bearer tokens, client secrets,
  passwords, api keys)
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


class MaskSecretsFilter(logging.Filter):
    """Redact secrets from log records before any handler formats them."""

    _patterns = [
        re.compile(r"(Authorization:\s*Bearer\s+)([A-Za-z0-9._~+/=-]+)", re.IGNORECASE),
        re.compile(r"(\bBearer\s+)([A-Za-z0-9._~+/=-]+)", re.IGNORECASE),
        re.compile(r"(client[_-]?secret[\"']?\s*[=:]\s*[\"']?)([^\"',\s]+)", re.IGNORECASE),
        re.compile(r"(api[_-]?key[\"']?\s*[=:]\s*[\"']?)([^\"',\s]+)", re.IGNORECASE),
        re.compile(r"(password[\"']?\s*[=:]\s*[\"']?)([^\"',\s]+)", re.IGNORECASE),
        re.compile(r"(\btoken[\"']?\s*[=:]\s*[\"']?)([^\"',\s]+)", re.IGNORECASE),
    ]

    @staticmethod
    def _mask(text: str) -> str:
        masked = text
        for pat in MaskSecretsFilter._patterns:
            masked = pat.sub(r"\1***REDACTED***", masked)
        return masked

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask(v) if isinstance(v, str) else v for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._mask(a) if isinstance(a, str) else a for a in record.args)
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        return True


class _ContextDefaults(logging.Filter):
    """Fill the context fields the formatter expects on records from plain module loggers."""

    _keys = ("run_id", "action", "kind", "identity")

    def filter(self, record: logging.LogRecord) -> bool:
        for key in self._keys:
            if not hasattr(record, key):
                setattr(record, key, "-")
        return True


_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | "
    "run=%(run_id)s action=%(action)s kind=%(kind)s id=%(identity)s | "
    "%(message)s"
)


def _level(name: str, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


def _utc_formatter(fmt: str) -> logging.Formatter:
    f = logging.Formatter(fmt=fmt, datefmt="%Y-%m-%dT%H:%M:%SZ")
    f.converter = time.gmtime  # type: ignore[assignment]
    return f


def _prepare(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(_ContextDefaults())
    handler.addFilter(MaskSecretsFilter())
    return handler


def _replace_console_handler(base: logging.Logger, level: int, formatter: logging.Formatter) -> None:
    """Exactly one stderr StreamHandler (pytest swaps stdio between tests)."""
    for h in list(base.handlers):
        if type(h) is logging.StreamHandler:
            base.removeHandler(h)
            h.close()
    base.addHandler(_prepare(logging.StreamHandler(stream=sys.stderr), level, formatter))


def _ensure_app_file_handler(base: logging.Logger, base_dir: str, level: int, formatter: logging.Formatter) -> None:
    """One TimedRotatingFileHandler on <base_dir>/app.log; stale ones are replaced."""
    os.makedirs(base_dir, exist_ok=True)
    desired = os.path.abspath(os.path.join(base_dir, "app.log"))

    for h in list(base.handlers):
        if isinstance(h, logging.handlers.TimedRotatingFileHandler):
            if os.path.abspath(h.baseFilename) != desired:
                base.removeHandler(h)
                h.close()

    if not any(
        isinstance(h, logging.handlers.TimedRotatingFileHandler)
        and os.path.abspath(h.baseFilename) == desired
        for h in base.handlers
    ):
        rh = logging.handlers.TimedRotatingFileHandler(
            desired, when="midnight", backupCount=14, encoding="utf-8", utc=True, delay=False
        )
        base.addHandler(_prepare(rh, level, formatter))


def build_logger(
    *,
    name: str = "psync",
    run_id: str,
    action: str,
    base_dir: str = "logs",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    extra: Optional[Dict[str, Any]] = None,
) -> logging.LoggerAdapter:
    """
    Configure and return a LoggerAdapter.

    - The base logger `<name>` holds the console and rotating file handlers;
      module loggers such as `psync.http` propagate into it.
    - A child logger `<name>.<action>.<run_id>` holds the per-run file.
    """
    formatter = _utc_formatter(_FORMAT)
    file_lvl = _level(file_level, logging.DEBUG)

    base = logging.getLogger(name)
    base.setLevel(logging.DEBUG)
    base.propagate = False
    _replace_console_handler(base, _level(console_level, logging.INFO), formatter)
    _ensure_app_file_handler(base, base_dir, file_lvl, formatter)

    child = logging.getLogger(f"{name}.{action}.{run_id}")
    child.setLevel(logging.DEBUG)
    child.propagate = True
    if not getattr(child, "_psync_run_file", False):
        dated_dir = os.path.join(base_dir, datetime.now(timezone.utc).strftime("%Y-%m-%d"))
        os.makedirs(dated_dir, exist_ok=True)
        run_file = os.path.join(dated_dir, f"{action}_{run_id}.log")
        Path(run_file).touch(exist_ok=True)
        child.addHandler(_prepare(logging.FileHandler(run_file, encoding="utf-8"), file_lvl, formatter))
        child._psync_run_file = True  # type: ignore[attr-defined]

    adapter = logging.LoggerAdapter(
        child,
        {
            "run_id": run_id,
            "action": action,
            "kind": (extra or {}).get("kind", "-"),
            "identity": (extra or {}).get("identity", "-"),
        },
    )
    adapter.debug("Logger initialised")
    return adapter


def bind(logger: logging.LoggerAdapter, **context: Any) -> logging.LoggerAdapter:
    """Same underlying logger, extras updated (e.g. kind / identity per instance)."""
    merged = dict(logger.extra or {})
    merged.update({k: v for k, v in context.items() if v is not None})
    return logging.LoggerAdapter(logger.logger, merged)
