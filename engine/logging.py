"""
Campaign Orchestrator — Structured Logging

Emits one JSON object per log line for every campaign lifecycle event so
operations can be followed end-to-end by operation_id / target_id.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - Namespace: everything logs under "campaign_orchestrator.*"
  - Structured fields ride on the LogRecord as `record.structured`

Usage:
    from engine.logging import CampaignEventLogger, configure_logging, get_logger

    configure_logging(level="INFO")
    events = CampaignEventLogger()
    events.on_phase_advanced("op_123", "G1", from_phase=0, to_phase=1)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "campaign_orchestrator"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    Every entry carries timestamp, level, logger, message and the
    service name. Fields passed through `extra={"structured": {...}}`
    are merged into the top level of the entry.
    """

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("CAMPAIGN_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Configure the campaign_orchestrator logger with JSON output.

    Safe to call repeatedly: existing handlers are replaced, and child
    loggers are reset to inherit from the root namespace.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the campaign_orchestrator namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


# ═══════════════════════════════════════════════════════════════════
# Campaign Event Logger
# ═══════════════════════════════════════════════════════════════════

class CampaignEventLogger:
    """
    Structured logger for campaign lifecycle events.

    One instance is shared by the state machine, scheduler and
    resumption manager. Each event is a single INFO/WARNING line whose
    `action` field names the event.
    """

    def __init__(self, name: str = "events"):
        self._logger = get_logger(name)

    def _emit(self, level: int, action: str, exc_info: Any = None, **fields):
        if not self._logger.isEnabledFor(level):
            return
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=exc_info,
        )
        record.structured = {"action": action, **fields}
        self._logger.handle(record)

    def on_initiated(self, operation_id: str, target_id: str,
                     initiator_id: str, participants: int) -> None:
        self._emit(
            logging.INFO, "operation_initiated",
            operation_id=operation_id,
            target_id=target_id,
            initiator_id=initiator_id,
            participants=participants,
        )

    def on_phase_advanced(self, operation_id: str, target_id: str,
                          from_phase: int, to_phase: int) -> None:
        self._emit(
            logging.INFO, "phase_advanced",
            operation_id=operation_id,
            target_id=target_id,
            from_phase=from_phase,
            to_phase=to_phase,
        )

    def on_messages_planned(self, operation_id: str, phase: int, count: int) -> None:
        self._emit(
            logging.INFO, "messages_planned",
            operation_id=operation_id,
            phase=phase,
            count=count,
        )

    def on_message_ready(self, message_id: str, operation_id: str, phase: int) -> None:
        self._emit(
            logging.INFO, "message_ready",
            message_id=message_id,
            operation_id=operation_id,
            phase=phase,
        )

    def on_message_dropped(self, message_id: str, operation_id: str, reason: str) -> None:
        self._emit(
            logging.INFO, "message_dropped",
            message_id=message_id,
            operation_id=operation_id,
            reason=reason,
        )

    def on_message_delivered(self, message_id: str, operation_id: str) -> None:
        self._emit(
            logging.INFO, "message_delivered",
            message_id=message_id,
            operation_id=operation_id,
        )

    def on_terminated(self, operation_id: str, target_id: str, status: str,
                      purged_messages: int) -> None:
        self._emit(
            logging.INFO, "operation_terminated",
            operation_id=operation_id,
            target_id=target_id,
            status=status,
            purged_messages=purged_messages,
        )

    def on_resumption_pass(self, advanced: int, readied: int,
                           armed: int, errors: int) -> None:
        self._emit(
            logging.INFO, "resumption_pass",
            advanced=advanced,
            readied=readied,
            armed=armed,
            errors=errors,
        )

    def on_callback_failed(self, key: str, error: BaseException) -> None:
        self._emit(
            logging.WARNING, "callback_failed",
            exc_info=(type(error), error, error.__traceback__),
            key=key,
            error=str(error)[:500],
        )
