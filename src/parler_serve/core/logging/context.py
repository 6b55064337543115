"""
Logging state: request id correlation and process-wide configuration.

The request id lives in a ContextVar so every coroutine handling a request
(and anything it awaits) tags its log lines with the same id. The job worker
runs in its own task, so the scheduler sets the job's request id explicitly
before logging about it.

Environment Variables:
    PARLER_SERVE_LOG_LEVEL:    Override log level (1-4 or name)
    PARLER_SERVE_LOG_DIR:      Directory for the JSONL log file
    PARLER_SERVE_JSONL_FILE:   JSONL filename
    PARLER_SERVE_LOG_ROTATE_BYTES / PARLER_SERVE_LOG_ROTATE_BACKUP
"""
from __future__ import annotations

import os
from contextvars import ContextVar
from typing import Any, Dict

import yaml

from .levels import LEVEL_NAMES, LogLevel

_request_id: ContextVar[str] = ContextVar("request_id", default="-")

_configured: bool = False
_log_config: Dict[str, Any] = {}
_current_level: LogLevel = LogLevel.NORMAL


def get_request_id() -> str:
    """Request id of the current context, "-" outside a request."""
    return _request_id.get()


def set_request_id(rid: str) -> None:
    _request_id.set(rid)


def get_level() -> LogLevel:
    return _current_level


def set_level(level: LogLevel) -> None:
    global _current_level
    _current_level = level


def get_level_name() -> str:
    return LEVEL_NAMES.get(_current_level, "NORMAL")


def is_configured() -> bool:
    return _configured


def set_configured(value: bool) -> None:
    global _configured
    _configured = value


def get_log_config() -> Dict[str, Any]:
    return _log_config


def set_log_config(config: Dict[str, Any]) -> None:
    global _log_config
    _log_config = config


def read_logging_config() -> Dict[str, Any]:
    """
    Resolve logging configuration from the settings file and environment.

    Environment variables win over the ``logging`` section of settings.yaml.
    A missing or unreadable settings file just means defaults.
    """
    cfg: Dict[str, Any] = {}

    try:
        from parler_serve.core.config import load_settings, settings_path
        settings = load_settings(settings_path())
        cfg.update(settings.raw.get("logging", {}) or {})
    except (OSError, ValueError, yaml.YAMLError):
        pass

    if os.getenv("PARLER_SERVE_LOG_LEVEL"):
        cfg["level"] = os.environ["PARLER_SERVE_LOG_LEVEL"]
    if os.getenv("PARLER_SERVE_LOG_DIR"):
        cfg["log_dir"] = os.environ["PARLER_SERVE_LOG_DIR"]
    if os.getenv("PARLER_SERVE_JSONL_FILE"):
        cfg["jsonl_file"] = os.environ["PARLER_SERVE_JSONL_FILE"]
    if os.getenv("PARLER_SERVE_LOG_ROTATE_BYTES"):
        try:
            cfg["rotate_max_bytes"] = int(os.environ["PARLER_SERVE_LOG_ROTATE_BYTES"])
        except ValueError:
            pass
    if os.getenv("PARLER_SERVE_LOG_ROTATE_BACKUP"):
        try:
            cfg["rotate_backup_count"] = int(os.environ["PARLER_SERVE_LOG_ROTATE_BACKUP"])
        except ValueError:
            pass

    return cfg
