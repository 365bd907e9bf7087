import hashlib
import json
import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.infra.db.repositories import WebhookEventRepository
from app.schemas.webhook import HubSpotWebhookEvent
from app.services.errors import InvalidWebhookPayloadError

logger = logging.getLogger(__name__)

_EVENTS_ADAPTER = TypeAdapter(list[HubSpotWebhookEvent])


@dataclass(slots=True)
class IngestResult:
    received: int
    logged: int
    duplicates: int
    pending_event_ids: list[UUID] = field(default_factory=list)


def parse_webhook_body(body: bytes) -> list[HubSpotWebhookEvent]:
    """Decode a delivery body; HubSpot batches events but a single object is accepted."""
    try:
        raw = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidWebhookPayloadError("body is not valid JSON") from exc

    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        raise InvalidWebhookPayloadError("expected an event object or an array of events")

    try:
        return _EVENTS_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise InvalidWebhookPayloadError(f"{location}: {first.get('msg')}") from exc


def build_event_key(event: HubSpotWebhookEvent) -> str:
    if event.event_id:
        return f"{event.subscription_type}:{event.event_id}"
    if event.occurred_at is not None:
        content = "|".join(
            (
                event.subscription_type,
                event.object_id,
                event.property_name or "",
                event.property_value or "",
                event.occurred_at.isoformat(),
            )
        )
        return "sha256:" + hashlib.sha256(content.encode("utf-8")).hexdigest()
    # Nothing stable to dedupe on; every delivery is its own event.
    return f"random:{uuid.uuid4()}"


class WebhookIngestService:
    def __init__(
        self,
        session: AsyncSession,
        events: WebhookEventRepository | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session = session
        self.events = events or WebhookEventRepository(session)
        self._clock = clock or (lambda: datetime.now(UTC))

    async def ingest(self, payload: Sequence[HubSpotWebhookEvent]) -> IngestResult:
        """Append a delivery to the event log and commit it.

        Events of one delivery are logged in upstream order (``occurredAt``
        when present, otherwise array order) and receive strictly increasing
        ``observed_at`` values so later ordering by ingestion time is stable.
        Redelivered events that were never processed are returned again for
        detection.
        """
        ordered = sorted(
            enumerate(payload),
            key=lambda item: (
                item[1].occurred_at is None,
                self._as_utc(item[1].occurred_at) or datetime.min.replace(tzinfo=UTC),
                item[0],
            ),
        )
        received_at = self._clock()
        result = IngestResult(received=len(payload), logged=0, duplicates=0)

        for offset, (_, item) in enumerate(ordered):
            event, created = await self.events.append(
                event_key=build_event_key(item),
                conversation_id=item.object_id,
                subscription_type=item.subscription_type,
                property_name=item.property_name,
                property_value=item.property_value,
                change_flag=item.change_flag,
                occurred_at=self._as_utc(item.occurred_at),
                observed_at=received_at + timedelta(microseconds=offset),
                payload=item.model_dump(mode="json", by_alias=True),
            )
            if created:
                result.logged += 1
            else:
                result.duplicates += 1
            if event.processed_at is None:
                result.pending_event_ids.append(event.id)

        await self.session.commit()

        if result.duplicates:
            logger.info(
                "Webhook delivery contained %d already logged event(s)",
                result.duplicates,
            )
        return result

    @staticmethod
    def _as_utc(value: datetime | None) -> datetime | None:
        if value is None or value.tzinfo is not None:
            return value
        return value.replace(tzinfo=UTC)
