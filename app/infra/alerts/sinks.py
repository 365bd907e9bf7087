import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.infra.alerts.dispatcher import Alert
from app.infra.db.repositories import AlertRepository

alert_logger = logging.getLogger("app.alerts")


class LogAlertSink:
    name = "console"

    def __init__(self, target: logging.Logger | None = None) -> None:
        self._logger = target or alert_logger

    async def deliver(self, alert: Alert, message: str) -> None:
        self._logger.warning(
            message,
            extra={
                "conversation_id": alert.conversation_id,
                "assignee": alert.assignee,
                "alert_kind": alert.kind.value,
            },
        )


class AuditAlertSink:
    name = "audit"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def deliver(self, alert: Alert, message: str) -> None:
        details = {
            "assignee": alert.assignee,
            "escalated_from": alert.escalated_from,
            "alerted_at": alert.created_at.isoformat(),
            **dict(alert.details),
        }
        async with self._session_factory() as session:
            await AlertRepository(session).create(
                kind=alert.kind,
                message=message,
                conversation_id=alert.conversation_id,
                details=details,
            )
            await session.commit()
