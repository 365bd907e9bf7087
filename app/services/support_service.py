import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from app.infra.db.models import SupportCounter
from app.infra.db.repositories import ConversationStateRepository, SupportCounterRepository
from app.services.errors import SupportDataUnavailableError

logger = logging.getLogger(__name__)

RECONCILER_SOURCE = "reconciler"
ADMIN_RESET_SOURCE = "admin-reset"


@dataclass(slots=True)
class RecalculationResult:
    previous: int | None
    recalculated: int

    @property
    def drift(self) -> int:
        return self.recalculated - (self.previous or 0)


@dataclass(slots=True)
class ResetResult:
    previous: int | None
    conversations_purged: int
    counted_flags_cleared: int


class SupportService:
    def __init__(
        self,
        session: AsyncSession,
        counters: SupportCounterRepository | None = None,
        conversations: ConversationStateRepository | None = None,
    ) -> None:
        self.session = session
        self.counters = counters or SupportCounterRepository(session)
        self.conversations = conversations or ConversationStateRepository(session)

    async def get_support_data(self) -> SupportCounter:
        counter = await self.counters.get_current()
        if counter is None:
            raise SupportDataUnavailableError()
        return counter

    async def update_reported_counts(
        self,
        *,
        tickets_open: int,
        tickets_chat: int,
        tickets_email: int,
        tickets_other: int,
        sessions_active: int | None,
        source: str,
    ) -> SupportCounter:
        """Store the figures pushed by the reconciliation job.

        The escalated-session count belongs to the escalation detector and is
        never written here.
        """
        await self.counters.update_reported_counts(
            tickets_open=tickets_open,
            tickets_chat=tickets_chat,
            tickets_email=tickets_email,
            tickets_other=tickets_other,
            sessions_active=sessions_active,
            source=source,
        )
        await self.session.commit()
        logger.info(
            "Support data updated by %s: open=%d chat=%d email=%d other=%d active=%s",
            source,
            tickets_open,
            tickets_chat,
            tickets_email,
            tickets_other,
            sessions_active,
        )
        return await self.get_support_data()

    async def recalculate_escalations(self) -> RecalculationResult:
        locked = await self.counters.lock_current()
        previous = locked.sessions_escalated
        recalculated = await self.conversations.count_counted_escalations()
        await self.counters.set_escalated(recalculated, source=RECONCILER_SOURCE)
        await self.session.commit()

        result = RecalculationResult(previous=previous, recalculated=recalculated)
        if result.drift:
            logger.warning(
                "Escalated session count drifted by %+d (stored=%s, recalculated=%d)",
                result.drift,
                previous,
                recalculated,
            )
        return result

    async def reset_escalations(self, *, purge_conversations: bool = False) -> ResetResult:
        locked = await self.counters.lock_current()
        previous = locked.sessions_escalated

        purged = 0
        cleared = 0
        if purge_conversations:
            purged = await self.conversations.delete_all()
        else:
            # Closing a conversation that is still flagged would decrement the
            # freshly zeroed count.
            cleared = await self.conversations.clear_counted_flags()

        await self.counters.set_escalated(0, source=ADMIN_RESET_SOURCE)
        await self.session.commit()
        logger.warning(
            "Escalated session count reset (previous=%s, purged=%d, cleared=%d)",
            previous,
            purged,
            cleared,
        )
        return ResetResult(
            previous=previous,
            conversations_purged=purged,
            counted_flags_cleared=cleared,
        )
