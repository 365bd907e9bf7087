"""Alert formatting and delivery sinks."""

from app.infra.alerts.dispatcher import (
    Alert,
    AlertDispatcher,
    NoopAlertDispatcher,
    format_alert_message,
)

__all__ = ["Alert", "AlertDispatcher", "NoopAlertDispatcher", "format_alert_message"]
