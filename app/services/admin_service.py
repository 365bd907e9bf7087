import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.locks import KeyedAsyncLock
from app.domain.enums import OwnershipState
from app.domain.state_machine import ConversationLifecycle, ConversationSnapshot
from app.infra.db.models import WebhookEvent
from app.infra.db.repositories import (
    ConversationStateRepository,
    SupportCounterRepository,
    WebhookEventRepository,
)
from app.services.errors import (
    ConversationStateNotFoundError,
    EscalationDetectionDisabledError,
)
from app.services.escalation_service import DetectionResult, EscalationDetector

logger = logging.getLogger(__name__)

ADMIN_REPLAY_SOURCE = "admin-replay"


@dataclass(slots=True)
class ConversationDebug:
    conversation_id: str
    state: ConversationSnapshot | None
    ownership: OwnershipState
    events: list[WebhookEvent]


@dataclass(slots=True)
class ReplayResult:
    conversation_id: str
    rebuilt: bool
    counter_delta: int = 0
    results: list[DetectionResult] = field(default_factory=list)


class AdminService:
    def __init__(
        self,
        session: AsyncSession,
        detector: EscalationDetector,
        events: WebhookEventRepository | None = None,
        conversations: ConversationStateRepository | None = None,
        counters: SupportCounterRepository | None = None,
        locks: KeyedAsyncLock | None = None,
    ) -> None:
        self.session = session
        self.detector = detector
        self.events = events or WebhookEventRepository(session)
        self.conversations = conversations or ConversationStateRepository(session)
        self.counters = counters or SupportCounterRepository(session)
        self.locks = locks or detector.locks

    async def get_conversation_debug(
        self,
        conversation_id: str,
        *,
        history_limit: int = 100,
    ) -> ConversationDebug:
        state = await self.conversations.get(conversation_id)
        recent = await self.events.list_by_conversation(
            conversation_id,
            limit=history_limit,
            newest_first=True,
        )
        if state is None and not recent:
            raise ConversationStateNotFoundError(conversation_id)

        return ConversationDebug(
            conversation_id=conversation_id,
            state=state,
            ownership=ConversationLifecycle.ownership(state, self.detector.bot_ids),
            events=list(reversed(recent)),
        )

    async def replay_conversation(
        self,
        conversation_id: str,
        *,
        rebuild: bool = False,
    ) -> ReplayResult:
        """Run unprocessed events of one conversation through the detector.

        With ``rebuild`` the stored state is discarded first (retracting its
        counted escalation) and every logged event is replayed from scratch.
        """
        if not self.detector.enabled:
            raise EscalationDetectionDisabledError()

        detector = self.detector
        result = ReplayResult(conversation_id=conversation_id, rebuilt=rebuild)
        if rebuild:
            result.counter_delta = await self._discard_state(conversation_id)
            # Rebuilt events were alerted on when they first arrived.
            detector = detector.without_alerts()

        pending = await self.events.list_unprocessed(conversation_id)
        if not pending:
            state = await self.conversations.get(conversation_id)
            logged = await self.events.list_by_conversation(conversation_id, limit=1)
            if state is None and not logged:
                raise ConversationStateNotFoundError(conversation_id)
            return result

        result.results = await detector.process_events([event.id for event in pending])
        logger.info(
            "Replayed %d event(s) (rebuild=%s)",
            len(pending),
            rebuild,
            extra={"conversation_id": conversation_id},
        )
        return result

    async def _discard_state(self, conversation_id: str) -> int:
        async with self.locks.hold(conversation_id):
            counter_delta = 0
            current = await self.conversations.get(conversation_id)
            if current is not None:
                counter_delta = ConversationLifecycle.retract(current)
                await self.conversations.delete(conversation_id)
                if counter_delta:
                    await self.counters.apply_escalated_delta(
                        counter_delta, source=ADMIN_REPLAY_SOURCE
                    )
            await self.events.clear_processed(conversation_id)
            await self.session.commit()
        return counter_delta
