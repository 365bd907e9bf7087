"""Application logging configuration."""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from app.core.config import Settings, get_settings

CONTEXT_FIELDS = ("conversation_id", "event_id", "assignee", "stage", "alert_kind")


class JSONFormatter(logging.Formatter):
    """Render records as one JSON object per line.

    Escalation context passed through ``extra=`` (conversation id, event id,
    assignee, processing stage, alert kind) is copied onto the payload when
    present.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field_name in CONTEXT_FIELDS:
            if hasattr(record, field_name):
                log_data[field_name] = getattr(record, field_name)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    if settings.log_json:
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")
        )
    root_logger.addHandler(console_handler)

    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)

    root_logger.info(
        "Logging configured: level=%s, format=%s",
        settings.log_level.upper(),
        "json" if settings.log_json else "text",
    )
