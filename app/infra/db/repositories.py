from dataclasses import asdict
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import Select, case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.enums import AlertKind, PropertyName
from app.domain.exceptions import StaleConversationStateError
from app.domain.state_machine import ConversationSnapshot
from app.infra.db.models import (
    CURRENT_COUNTER_ID,
    AlertRecord,
    ConversationState,
    SupportCounter,
    WebhookEvent,
)

_SNAPSHOT_FIELDS = (
    "current_assignee",
    "has_had_bot_assignment",
    "escalated",
    "escalated_at",
    "escalated_from",
    "escalated_to",
    "escalation_counted",
    "status",
    "closed_at",
    "last_assignment_at",
    "last_status_at",
)


class WebhookEventRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, event_id: UUID) -> WebhookEvent | None:
        return await self.session.get(WebhookEvent, event_id, populate_existing=True)

    async def get_by_key(self, event_key: str) -> WebhookEvent | None:
        stmt: Select[tuple[WebhookEvent]] = (
            select(WebhookEvent).where(WebhookEvent.event_key == event_key).limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def append(
        self,
        *,
        event_key: str,
        conversation_id: str,
        subscription_type: str,
        observed_at: datetime,
        property_name: str | None = None,
        property_value: str | None = None,
        change_flag: str | None = None,
        occurred_at: datetime | None = None,
        payload: dict | None = None,
    ) -> tuple[WebhookEvent, bool]:
        existing = await self.get_by_key(event_key)
        if existing is not None:
            return existing, False

        event = WebhookEvent(
            event_key=event_key,
            conversation_id=conversation_id,
            subscription_type=subscription_type,
            property_name=property_name,
            property_value=property_value,
            change_flag=change_flag,
            occurred_at=occurred_at,
            observed_at=observed_at,
            payload=payload,
            attempt_count=0,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(event)
                await self.session.flush()
        except IntegrityError:
            # Lost an insert race against a redelivery of the same event.
            existing = await self.get_by_key(event_key)
            if existing is None:
                raise
            return existing, False
        return event, True

    async def list_by_conversation(
        self,
        conversation_id: str,
        *,
        property_name: str | None = None,
        observed_before: datetime | None = None,
        exclude_event_id: UUID | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[WebhookEvent]:
        stmt: Select[tuple[WebhookEvent]] = select(WebhookEvent).where(
            WebhookEvent.conversation_id == conversation_id
        )
        if property_name is not None:
            stmt = stmt.where(WebhookEvent.property_name == property_name)
        if observed_before is not None:
            stmt = stmt.where(WebhookEvent.observed_at < observed_before)
        if exclude_event_id is not None:
            stmt = stmt.where(WebhookEvent.id != exclude_event_id)

        if newest_first:
            stmt = stmt.order_by(WebhookEvent.observed_at.desc(), WebhookEvent.id.desc())
        else:
            stmt = stmt.order_by(WebhookEvent.observed_at.asc(), WebhookEvent.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_recent_assignments(
        self,
        conversation_id: str,
        *,
        observed_before: datetime,
        exclude_event_id: UUID | None,
        limit: int,
    ) -> list[WebhookEvent]:
        return await self.list_by_conversation(
            conversation_id,
            property_name=PropertyName.ASSIGNED_TO.value,
            observed_before=observed_before,
            exclude_event_id=exclude_event_id,
            limit=limit,
            newest_first=True,
        )

    async def list_unprocessed(self, conversation_id: str) -> list[WebhookEvent]:
        stmt: Select[tuple[WebhookEvent]] = (
            select(WebhookEvent)
            .where(
                WebhookEvent.conversation_id == conversation_id,
                WebhookEvent.processed_at.is_(None),
            )
            .order_by(WebhookEvent.observed_at.asc(), WebhookEvent.id.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_failed(self, *, max_attempts: int, limit: int = 100) -> list[WebhookEvent]:
        stmt: Select[tuple[WebhookEvent]] = (
            select(WebhookEvent)
            .where(
                WebhookEvent.processed_at.is_(None),
                WebhookEvent.processing_error.is_not(None),
                WebhookEvent.attempt_count < max_attempts,
            )
            .order_by(WebhookEvent.observed_at.asc(), WebhookEvent.id.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def mark_processed(self, event: WebhookEvent, processed_at: datetime) -> None:
        event.processed_at = processed_at
        event.processing_error = None
        event.attempt_count = (event.attempt_count or 0) + 1
        await self.session.flush()

    async def record_failure(self, event_id: UUID, error: str) -> None:
        stmt = (
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(
                processing_error=error[:2000],
                attempt_count=WebhookEvent.attempt_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def clear_processed(self, conversation_id: str) -> int:
        stmt = (
            update(WebhookEvent)
            .where(WebhookEvent.conversation_id == conversation_id)
            .values(processed_at=None, processing_error=None)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)


class ConversationStateRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, conversation_id: str) -> ConversationSnapshot | None:
        row = await self.session.get(
            ConversationState, conversation_id, populate_existing=True
        )
        if row is None:
            return None
        return self._to_snapshot(row)

    async def save(self, snapshot: ConversationSnapshot) -> ConversationSnapshot:
        """Persist a snapshot, failing if another writer got there first.

        New conversations are inserted; existing ones are updated only while
        the stored ``version`` still equals ``snapshot.version``.
        """
        values = self._to_values(snapshot)

        if snapshot.version is None:
            row = ConversationState(
                conversation_id=snapshot.conversation_id, version=1, **values
            )
            try:
                async with self.session.begin_nested():
                    self.session.add(row)
                    await self.session.flush()
            except IntegrityError as exc:
                raise StaleConversationStateError(snapshot.conversation_id, None) from exc
            return self._with_version(snapshot, 1)

        next_version = snapshot.version + 1
        stmt = (
            update(ConversationState)
            .where(
                ConversationState.conversation_id == snapshot.conversation_id,
                ConversationState.version == snapshot.version,
            )
            .values(**values, version=next_version, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if not result.rowcount:
            raise StaleConversationStateError(snapshot.conversation_id, snapshot.version)
        return self._with_version(snapshot, next_version)

    async def delete(self, conversation_id: str) -> bool:
        stmt = delete(ConversationState).where(
            ConversationState.conversation_id == conversation_id
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def delete_all(self) -> int:
        result = await self.session.execute(delete(ConversationState))
        return int(result.rowcount or 0)

    async def clear_counted_flags(self) -> int:
        stmt = (
            update(ConversationState)
            .where(ConversationState.escalation_counted.is_(True))
            .values(
                escalation_counted=False,
                version=ConversationState.version + 1,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)

    async def count_counted_escalations(self) -> int:
        stmt: Select[tuple[int]] = select(func.count(ConversationState.conversation_id)).where(
            ConversationState.escalated.is_(True),
            ConversationState.escalation_counted.is_(True),
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one() or 0)

    @staticmethod
    def _to_snapshot(row: ConversationState) -> ConversationSnapshot:
        return ConversationSnapshot(
            conversation_id=row.conversation_id,
            version=row.version,
            **{field: getattr(row, field) for field in _SNAPSHOT_FIELDS},
        )

    @staticmethod
    def _to_values(snapshot: ConversationSnapshot) -> dict[str, Any]:
        data = asdict(snapshot)
        return {field: data[field] for field in _SNAPSHOT_FIELDS}

    @staticmethod
    def _with_version(snapshot: ConversationSnapshot, version: int) -> ConversationSnapshot:
        data = asdict(snapshot)
        data["version"] = version
        return ConversationSnapshot(**data)


class SupportCounterRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_current(self) -> SupportCounter | None:
        return await self.session.get(
            SupportCounter, CURRENT_COUNTER_ID, populate_existing=True
        )

    async def ensure_current(self) -> SupportCounter:
        counter = await self.get_current()
        if counter is not None:
            return counter

        counter = SupportCounter(
            id=CURRENT_COUNTER_ID,
            tickets_open=0,
            tickets_chat=0,
            tickets_email=0,
            tickets_other=0,
            sessions_active=None,
            sessions_escalated=0,
            source="bootstrap",
        )
        try:
            async with self.session.begin_nested():
                self.session.add(counter)
                await self.session.flush()
        except IntegrityError:
            existing = await self.get_current()
            if existing is None:
                raise
            return existing
        return counter

    async def lock_current(self) -> SupportCounter:
        """Row-lock the counter so concurrent deltas wait for this transaction."""
        await self.ensure_current()
        stmt: Select[tuple[SupportCounter]] = (
            select(SupportCounter)
            .where(SupportCounter.id == CURRENT_COUNTER_ID)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def apply_escalated_delta(self, delta: int, source: str) -> int:
        """Atomically add ``delta`` to the escalated-session count, floored at 0.

        Returns the stored value after the update.
        """
        await self.ensure_current()
        adjusted = func.coalesce(SupportCounter.sessions_escalated, 0) + delta
        stmt = (
            update(SupportCounter)
            .where(SupportCounter.id == CURRENT_COUNTER_ID)
            .values(
                sessions_escalated=case((adjusted < 0, 0), else_=adjusted),
                source=source,
                updated_at=func.now(),
            )
            .returning(SupportCounter.sessions_escalated)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one() or 0)

    async def set_escalated(self, value: int, source: str) -> None:
        await self.ensure_current()
        stmt = (
            update(SupportCounter)
            .where(SupportCounter.id == CURRENT_COUNTER_ID)
            .values(sessions_escalated=max(value, 0), source=source, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def update_reported_counts(
        self,
        *,
        tickets_open: int,
        tickets_chat: int,
        tickets_email: int,
        tickets_other: int,
        sessions_active: int | None,
        source: str,
    ) -> None:
        await self.ensure_current()
        stmt = (
            update(SupportCounter)
            .where(SupportCounter.id == CURRENT_COUNTER_ID)
            .values(
                tickets_open=tickets_open,
                tickets_chat=tickets_chat,
                tickets_email=tickets_email,
                tickets_other=tickets_other,
                sessions_active=sessions_active,
                source=source,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)


class AlertRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(
        self,
        kind: AlertKind,
        message: str,
        conversation_id: str | None = None,
        details: dict | None = None,
    ) -> AlertRecord:
        record = AlertRecord(
            kind=kind,
            conversation_id=conversation_id,
            message=message,
            details=details,
        )
        self.session.add(record)
        await self.session.flush()
        return record
