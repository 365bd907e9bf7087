import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from app.domain.enums import AlertKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Alert:
    kind: AlertKind
    conversation_id: str | None = None
    assignee: str | None = None
    escalated_from: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class AlertSink(Protocol):
    name: str

    async def deliver(self, alert: Alert, message: str) -> None: ...


class AlertEmitter(Protocol):
    def dispatch(self, alert: Alert) -> None: ...


def format_alert_message(alert: Alert) -> str:
    conversation = alert.conversation_id or "unknown"
    if alert.kind == AlertKind.NEW_CHAT:
        return f"New chat started (conversation {conversation})"
    if alert.kind == AlertKind.ESCALATION:
        source = alert.escalated_from or "unknown-bot"
        assignee = alert.assignee or "unknown"
        return (
            f"Conversation {conversation} escalated from {source} "
            f"to human agent {assignee}"
        )
    if alert.kind == AlertKind.CLOSURE:
        return f"Conversation {conversation} closed"
    return f"Support event for conversation {conversation}"


class AlertDispatcher:
    """Fire-and-forget fan-out of alerts to every configured sink.

    ``dispatch`` returns immediately; delivery runs in a background task and
    each sink is awaited independently so one failing sink never blocks or
    cancels another.
    """

    def __init__(self, sinks: Sequence[AlertSink]) -> None:
        self._sinks = list(sinks)
        self._pending: set[asyncio.Task[None]] = set()

    def dispatch(self, alert: Alert) -> None:
        message = format_alert_message(alert)
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(alert, message))
        except RuntimeError:
            logger.warning("No running event loop; dropping alert: %s", message)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def pending_count(self) -> int:
        return len(self._pending)

    async def _deliver(self, alert: Alert, message: str) -> None:
        results = await asyncio.gather(
            *(sink.deliver(alert, message) for sink in self._sinks),
            return_exceptions=True,
        )
        for sink, result in zip(self._sinks, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Alert sink %s failed: %s",
                    sink.name,
                    result,
                    extra={
                        "conversation_id": alert.conversation_id,
                        "alert_kind": alert.kind.value,
                    },
                )


class NoopAlertDispatcher:
    def dispatch(self, alert: Alert) -> None:
        _ = alert
        return None
