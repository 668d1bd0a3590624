from __future__ import annotations

import json
import logging
import logging.handlers
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


@dataclass
class JsonLogConfig:
    service_name: str = "thermnode"
    hostname: str | None = None


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Structured extras passed as ``extra={"fields": {...}}`` land under
    ``fields``.
    """

    def __init__(self, config: JsonLogConfig) -> None:
        super().__init__()
        self.config = config

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _utc_iso(record.created),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.config.service_name,
            "thread": record.threadName,
        }
        if self.config.hostname:
            payload["host"] = self.config.hostname

        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload["fields"] = fields

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def configure_logging(
    *,
    level: int | str,
    log_format: str = "text",
    syslog_host: str | None = None,
    syslog_port: int = 514,
) -> None:
    """Configure process logging.

    - log_format="json": structured JSON lines
    - log_format="text": standard human-readable

    When ``syslog_host`` is set, records are also forwarded to that syslog
    daemon over UDP using the same formatter.
    """

    if isinstance(level, str):
        level = logging.getLevelName(level.strip().upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    # Replace handlers to avoid duplicate logs when called multiple times.
    root.handlers.clear()

    formatter = _build_formatter(log_format)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root.addHandler(handler)

    if syslog_host:
        syslog = logging.handlers.SysLogHandler(
            address=(syslog_host, int(syslog_port)),
            facility=logging.handlers.SysLogHandler.LOG_DAEMON,
            socktype=socket.SOCK_DGRAM,
        )
        syslog.setFormatter(formatter)
        root.addHandler(syslog)


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format.strip().lower() == "json":
        return JsonFormatter(JsonLogConfig(hostname=socket.gethostname()))
    return logging.Formatter(TEXT_FORMAT)


def _utc_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
