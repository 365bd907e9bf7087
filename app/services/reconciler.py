import asyncio
import logging
from collections.abc import Collection
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.locks import KeyedAsyncLock
from app.infra.alerts.dispatcher import AlertEmitter
from app.infra.db.repositories import WebhookEventRepository
from app.services.escalation_service import EscalationDetector
from app.services.support_service import RecalculationResult, SupportService

logger = logging.getLogger(__name__)

MAX_EVENT_RETRIES = 5


@dataclass(slots=True)
class ReconcileReport:
    retried_events: int
    recalculation: RecalculationResult


class EscalationReconciler:
    """Periodic self-healing pass over the escalation figures.

    Each pass retries events whose detection failed and then recomputes the
    escalated-session count from stored conversation state.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bot_ids: Collection[str],
        *,
        interval_seconds: float,
        alerts: AlertEmitter | None = None,
        locks: KeyedAsyncLock | None = None,
        history_limit: int = 10,
        max_attempts: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._bot_ids = frozenset(bot_ids)
        self._interval_seconds = interval_seconds
        self._alerts = alerts
        self._locks = locks or KeyedAsyncLock()
        self._history_limit = history_limit
        self._max_attempts = max_attempts
        self._stopped = asyncio.Event()

    async def run_once(self) -> ReconcileReport:
        retried = 0
        if self._bot_ids:
            async with self._session_factory() as session:
                failed = await WebhookEventRepository(session).list_failed(
                    max_attempts=MAX_EVENT_RETRIES
                )
                if failed:
                    detector = EscalationDetector(
                        session,
                        self._bot_ids,
                        history_limit=self._history_limit,
                        max_attempts=self._max_attempts,
                        alerts=self._alerts,
                        locks=self._locks,
                    )
                    await detector.process_events([event.id for event in failed])
                    retried = len(failed)

        async with self._session_factory() as session:
            recalculation = await SupportService(session).recalculate_escalations()

        return ReconcileReport(retried_events=retried, recalculation=recalculation)

    async def run_forever(self) -> None:
        logger.info("Escalation reconciler started (every %ss)", self._interval_seconds)
        while not self._stopped.is_set():
            try:
                report = await self.run_once()
                logger.debug(
                    "Reconcile pass: retried=%d escalated=%d",
                    report.retried_events,
                    report.recalculation.recalculated,
                )
            except Exception:
                logger.warning("Escalation reconcile pass failed", exc_info=True)

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._interval_seconds)
            except TimeoutError:
                continue

    def stop(self) -> None:
        self._stopped.set()
