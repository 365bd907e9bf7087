import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.locks import KeyedAsyncLock
from app.domain.enums import AlertKind, DetectionOutcome, EventAction
from app.domain.events import AssignmentEvent, classify_event, normalize_assignee
from app.domain.exceptions import StaleConversationStateError
from app.domain.state_machine import ConversationLifecycle, Transition
from app.infra.alerts.dispatcher import Alert, AlertEmitter, NoopAlertDispatcher
from app.infra.db.models import WebhookEvent
from app.infra.db.repositories import (
    ConversationStateRepository,
    SupportCounterRepository,
    WebhookEventRepository,
)

logger = logging.getLogger(__name__)

DETECTOR_SOURCE = "escalation-detector"


@dataclass(slots=True)
class DetectionResult:
    event_id: UUID
    conversation_id: str | None
    outcome: DetectionOutcome
    counter_delta: int = 0
    escalated_from: str | None = None
    error: str | None = None


@dataclass(slots=True)
class _Progress:
    stage: str = "load_event"
    assignee: str | None = None


class EscalationDetector:
    """Turns logged webhook events into conversation state and counter changes.

    One detector owns one ``AsyncSession`` and handles events sequentially.
    Concurrent detectors (one per background task) coordinate through the
    shared ``KeyedAsyncLock`` within a process and through versioned state
    writes across processes; a version conflict rolls back and retries the
    whole event.

    Nothing raised while handling an event escapes ``process_event``: the
    event is already in the log, so failures are logged, recorded on the
    event row and reported as ``DetectionOutcome.FAILED``.
    """

    def __init__(
        self,
        session: AsyncSession,
        bot_ids: Collection[str],
        *,
        history_limit: int = 10,
        max_attempts: int = 3,
        events: WebhookEventRepository | None = None,
        conversations: ConversationStateRepository | None = None,
        counters: SupportCounterRepository | None = None,
        alerts: AlertEmitter | None = None,
        locks: KeyedAsyncLock | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session
        self.bot_ids = frozenset(bot_ids)
        self.history_limit = max(history_limit, 10)
        self.max_attempts = max(max_attempts, 1)
        self.events = events or WebhookEventRepository(session)
        self.conversations = conversations or ConversationStateRepository(session)
        self.counters = counters or SupportCounterRepository(session)
        self.alerts = alerts or NoopAlertDispatcher()
        self.locks = locks or KeyedAsyncLock()
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def enabled(self) -> bool:
        return bool(self.bot_ids)

    def without_alerts(self) -> "EscalationDetector":
        """Same detector, wired to a dispatcher that drops every alert."""
        return EscalationDetector(
            self.session,
            self.bot_ids,
            history_limit=self.history_limit,
            max_attempts=self.max_attempts,
            events=self.events,
            conversations=self.conversations,
            counters=self.counters,
            alerts=NoopAlertDispatcher(),
            locks=self.locks,
            clock=self._clock,
        )

    async def process_event(self, event_id: UUID) -> DetectionResult:
        if not self.enabled:
            logger.warning(
                "No bot assignee ids configured; escalation detection disabled",
                extra={"event_id": str(event_id)},
            )
            return DetectionResult(
                event_id=event_id,
                conversation_id=None,
                outcome=DetectionOutcome.DISABLED,
            )

        try:
            event = await self.events.get_by_id(event_id)
        except Exception as exc:
            logger.exception(
                "Failed to load webhook event",
                extra={"event_id": str(event_id), "stage": "load_event"},
            )
            await self._safe_rollback()
            return DetectionResult(
                event_id=event_id,
                conversation_id=None,
                outcome=DetectionOutcome.FAILED,
                error=str(exc),
            )

        if event is None:
            logger.error("Webhook event %s not found", event_id, extra={"event_id": str(event_id)})
            return DetectionResult(
                event_id=event_id,
                conversation_id=None,
                outcome=DetectionOutcome.FAILED,
                error="event not found",
            )

        conversation_id = event.conversation_id
        async with self.locks.hold(conversation_id):
            return await self._process_serialized(event_id, conversation_id)

    async def process_events(self, event_ids: Collection[UUID]) -> list[DetectionResult]:
        results: list[DetectionResult] = []
        for event_id in event_ids:
            results.append(await self.process_event(event_id))
        return results

    async def check_recent_bot_assignment(
        self,
        conversation_id: str,
        *,
        observed_before: datetime,
        exclude_event_id: UUID | None = None,
    ) -> str | None:
        """Newest bot assignee among the last few logged assignments, if any.

        Covers the case where a human assignment is handled before the bot
        assignment that preceded it has been applied to the stored state.
        """
        recent = await self.events.list_recent_assignments(
            conversation_id,
            observed_before=observed_before,
            exclude_event_id=exclude_event_id,
            limit=self.history_limit,
        )
        for candidate in recent:
            assignee = normalize_assignee(candidate.property_value)
            if assignee in self.bot_ids:
                return assignee
        return None

    async def _process_serialized(self, event_id: UUID, conversation_id: str) -> DetectionResult:
        progress = _Progress()
        try:
            for attempt in range(1, self.max_attempts + 1):
                progress.stage = "load_event"
                event = await self.events.get_by_id(event_id)
                if event is None:
                    raise LookupError(f"Webhook event '{event_id}' disappeared")
                if event.processed_at is not None:
                    return DetectionResult(
                        event_id=event_id,
                        conversation_id=conversation_id,
                        outcome=DetectionOutcome.DUPLICATE,
                    )

                try:
                    result, alert = await self._apply(event, progress)
                    progress.stage = "mark_processed"
                    await self.events.mark_processed(event, self._clock())
                    progress.stage = "commit"
                    await self.session.commit()
                except StaleConversationStateError:
                    await self.session.rollback()
                    if attempt >= self.max_attempts:
                        raise
                    logger.info(
                        "Conversation state changed concurrently; retrying (attempt %d)",
                        attempt,
                        extra={"conversation_id": conversation_id, "event_id": str(event_id)},
                    )
                    continue

                if alert is not None:
                    self.alerts.dispatch(alert)
                return result

            raise RuntimeError("unreachable")  # pragma: no cover
        except Exception as exc:
            await self._safe_rollback()
            logger.exception(
                "Escalation detection failed",
                extra={
                    "conversation_id": conversation_id,
                    "event_id": str(event_id),
                    "assignee": progress.assignee,
                    "stage": progress.stage,
                },
            )
            await self._record_failure(event_id, progress.stage, exc)
            return DetectionResult(
                event_id=event_id,
                conversation_id=conversation_id,
                outcome=DetectionOutcome.FAILED,
                error=str(exc),
            )

    async def _apply(
        self,
        event: WebhookEvent,
        progress: _Progress,
    ) -> tuple[DetectionResult, Alert | None]:
        action = classify_event(
            event.subscription_type,
            event.property_name,
            event.property_value,
        )

        if action == EventAction.ASSIGN:
            assignment = AssignmentEvent(
                conversation_id=event.conversation_id,
                assignee=normalize_assignee(event.property_value),
                observed_at=event.observed_at,
                event_id=event.id,
            )
            return await self._handle_assignment(assignment, progress)
        if action == EventAction.CLOSE:
            return await self._handle_closure(event, progress)
        if action == EventAction.REOPEN:
            return await self._handle_reopen(event, progress)
        if action == EventAction.NEW_CONVERSATION:
            alert = Alert(
                kind=AlertKind.NEW_CHAT,
                conversation_id=event.conversation_id,
                details={"event_id": str(event.id)},
            )
            return self._result(event.id, event.conversation_id, DetectionOutcome.ALERTED), alert

        logger.debug(
            "Ignoring %s event (property=%s)",
            event.subscription_type,
            event.property_name,
            extra={"conversation_id": event.conversation_id, "event_id": str(event.id)},
        )
        return self._result(event.id, event.conversation_id, DetectionOutcome.IGNORED), None

    async def _handle_assignment(
        self,
        assignment: AssignmentEvent,
        progress: _Progress,
    ) -> tuple[DetectionResult, Alert | None]:
        progress.assignee = assignment.assignee
        progress.stage = "load_state"
        current = await self.conversations.get(assignment.conversation_id)

        prior_bot_assignee: str | None = None
        if current is None and assignment.assignee not in self.bot_ids:
            progress.stage = "history_scan"
            prior_bot_assignee = await self.check_recent_bot_assignment(
                assignment.conversation_id,
                observed_before=assignment.observed_at,
                exclude_event_id=assignment.event_id,
            )

        transition = ConversationLifecycle.assign(
            current,
            conversation_id=assignment.conversation_id,
            assignee=assignment.assignee,
            observed_at=assignment.observed_at,
            bot_ids=self.bot_ids,
            now=self._clock(),
            prior_bot_assignee=prior_bot_assignee,
        )
        await self._persist(transition, progress)

        event_id = assignment.event_id
        if not transition.is_escalation:
            return (
                self._result(event_id, assignment.conversation_id, DetectionOutcome.UPDATED),
                None,
            )

        logger.info(
            "Escalation detected: %s -> %s",
            transition.escalated_from,
            assignment.assignee,
            extra={
                "conversation_id": assignment.conversation_id,
                "event_id": str(event_id),
                "assignee": assignment.assignee,
            },
        )
        alert = Alert(
            kind=AlertKind.ESCALATION,
            conversation_id=assignment.conversation_id,
            assignee=assignment.assignee,
            escalated_from=transition.escalated_from,
            details={"event_id": str(event_id)},
        )
        result = DetectionResult(
            event_id=event_id,
            conversation_id=assignment.conversation_id,
            outcome=DetectionOutcome.ESCALATED,
            counter_delta=transition.counter_delta,
            escalated_from=transition.escalated_from,
        )
        return result, alert

    async def _handle_closure(
        self,
        event: WebhookEvent,
        progress: _Progress,
    ) -> tuple[DetectionResult, Alert | None]:
        progress.stage = "load_state"
        current = await self.conversations.get(event.conversation_id)
        transition = ConversationLifecycle.close(
            current,
            conversation_id=event.conversation_id,
            now=self._clock(),
            observed_at=event.observed_at,
        )
        await self._persist(transition, progress)

        alert: Alert | None = None
        if transition.alert == AlertKind.CLOSURE:
            alert = Alert(
                kind=AlertKind.CLOSURE,
                conversation_id=event.conversation_id,
                assignee=transition.state.current_assignee,
                details={
                    "event_id": str(event.id),
                    "was_escalated": transition.state.escalated,
                },
            )
        result = DetectionResult(
            event_id=event.id,
            conversation_id=event.conversation_id,
            outcome=DetectionOutcome.CLOSED,
            counter_delta=transition.counter_delta,
        )
        return result, alert

    async def _handle_reopen(
        self,
        event: WebhookEvent,
        progress: _Progress,
    ) -> tuple[DetectionResult, Alert | None]:
        progress.stage = "load_state"
        current = await self.conversations.get(event.conversation_id)
        transition = ConversationLifecycle.reopen(
            current,
            conversation_id=event.conversation_id,
            observed_at=event.observed_at,
        )
        await self._persist(transition, progress)
        return self._result(event.id, event.conversation_id, DetectionOutcome.REOPENED), None

    async def _persist(self, transition: Transition, progress: _Progress) -> None:
        if transition.changed:
            progress.stage = "write_state"
            await self.conversations.save(transition.state)
        if transition.counter_delta:
            progress.stage = "counter_update"
            stored = await self.counters.apply_escalated_delta(
                transition.counter_delta, source=DETECTOR_SOURCE
            )
            if transition.counter_delta < 0 and stored == 0:
                logger.debug(
                    "Escalated session count reached its floor",
                    extra={"conversation_id": transition.state.conversation_id},
                )

    async def _record_failure(self, event_id: UUID, stage: str, exc: Exception) -> None:
        try:
            await self.events.record_failure(event_id, f"{stage}: {exc!r}")
            await self.session.commit()
        except Exception:
            await self._safe_rollback()
            logger.exception(
                "Could not record processing failure on webhook event",
                extra={"event_id": str(event_id)},
            )

    async def _safe_rollback(self) -> None:
        try:
            await self.session.rollback()
        except Exception:
            logger.exception("Session rollback failed")

    @staticmethod
    def _result(
        event_id: UUID,
        conversation_id: str,
        outcome: DetectionOutcome,
    ) -> DetectionResult:
        return DetectionResult(
            event_id=event_id,
            conversation_id=conversation_id,
            outcome=outcome,
        )
