from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .util.serialization import sanitize_for_json

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))) | {"message", "asctime"}

_NOISY_LOGGERS = ("urllib3", "msal", "requests")


def _is_json_safe(value: object, depth: int = 3) -> bool:
    if value is None or isinstance(value, (str, int, float, bool)):
        return True
    if depth <= 0:
        return False
    if isinstance(value, dict):
        return all(isinstance(k, str) and _is_json_safe(v, depth - 1) for k, v in value.items())
    if isinstance(value, (list, tuple)):
        return all(_is_json_safe(v, depth - 1) for v in value)
    return False


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    """
    Structured fields passed via `extra=`, with secret-looking keys redacted.
    Values that still are not JSON-safe after sanitizing are dropped.
    """
    raw = {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS and v is not None}
    cleaned = sanitize_for_json(raw)
    return {k: v for k, v in cleaned.items() if _is_json_safe(v)}


@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    json_logs: bool = False


class RunbookFilter(logging.Filter):
    """Stamps the active runbook name on every record passing a handler."""

    def __init__(self) -> None:
        super().__init__()
        self.runbook: Optional[str] = None

    def filter(self, record: logging.LogRecord) -> bool:
        if self.runbook and not hasattr(record, "runbook"):
            record.runbook = self.runbook
        return True


_RUNBOOK_FILTER = RunbookFilter()


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        payload.update(_record_extras(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True)


class PlainFormatter(logging.Formatter):
    """
    <ts> LEVEL name: [runbook] [step:phase] message: error (duration_ms=N)
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="seconds")
        parts = []
        runbook = getattr(record, "runbook", None)
        if runbook:
            parts.append(f"[{runbook}]")
        step = getattr(record, "step", None)
        phase = getattr(record, "phase", None)
        if step or phase:
            parts.append(f"[{step or 'unknown'}:{phase or 'unknown'}]")
        parts.append(record.getMessage())
        message = " ".join(parts)

        error = getattr(record, "error", None)
        if error:
            message = f"{message}: {error}"
        duration_ms = getattr(record, "duration_ms", None)
        if duration_ms is not None:
            message = f"{message} (duration_ms={duration_ms})"
        text = f"{timestamp} {record.levelname} {record.name}: {message}"
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return text


def _level_from_str(level: str) -> int:
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(config: Optional[LogConfig] = None) -> None:
    """
    Configure the root logger once per process; later calls are no-ops.
    Env overrides apply when the config leaves a value unset:
      - GRAPH_RB_LOG_LEVEL (default INFO)
      - GRAPH_RB_JSON_LOGS (1/true to enable)
    """
    if getattr(setup_logging, "_configured", False):
        return

    env_level = os.getenv("GRAPH_RB_LOG_LEVEL")
    env_json = (os.getenv("GRAPH_RB_JSON_LOGS") or "").lower() in ("1", "true", "yes")

    level = _level_from_str((config.level if config else None) or env_level or "INFO")
    json_logs = (config.json_logs if config else False) or env_json

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter() if json_logs else PlainFormatter())
    handler.addFilter(_RUNBOOK_FILTER)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    # HTTP and token-cache chatter stays quiet unless the run asks for DEBUG
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    setattr(setup_logging, "_configured", True)


def bind_runbook(name: Optional[str]) -> None:
    """Tag subsequent log records with the runbook being executed."""
    _RUNBOOK_FILTER.runbook = name


def add_run_log_file(log_path: Path) -> None:
    """
    Mirror the root logger into the run's output directory (run.log), using
    the same formatter as the console handler.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    target = str(log_path.resolve())
    if any(isinstance(h, logging.FileHandler) and h.baseFilename == target for h in root.handlers):
        return

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setLevel(root.level)
    formatter = root.handlers[0].formatter if root.handlers else None
    handler.setFormatter(formatter or PlainFormatter())
    handler.addFilter(_RUNBOOK_FILTER)
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
