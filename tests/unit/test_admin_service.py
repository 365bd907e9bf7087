from dataclasses import dataclass

import pytest

from app.domain.enums import AlertKind, DetectionOutcome, OwnershipState
from app.services.admin_service import AdminService
from app.services.errors import (
    ConversationStateNotFoundError,
    EscalationDetectionDisabledError,
)
from app.services.escalation_service import EscalationDetector
from tests.unit.fakes import (
    FakeConversationStateRepository,
    FakeSession,
    FakeSupportCounterRepository,
    FakeWebhookEventRepository,
    InMemoryStore,
    RecordingAlerts,
    at,
    log_assignment,
    log_status,
)


@dataclass(slots=True)
class FixtureState:
    store: InMemoryStore
    alerts: RecordingAlerts
    service: AdminService


def build_service(store: InMemoryStore, bot_ids: frozenset[str]) -> tuple[AdminService, RecordingAlerts]:
    session = FakeSession(store)
    events = FakeWebhookEventRepository(store)
    conversations = FakeConversationStateRepository(store)
    counters = FakeSupportCounterRepository(store)
    alerts = RecordingAlerts()
    detector = EscalationDetector(
        session,
        bot_ids,
        events=events,
        conversations=conversations,
        counters=counters,
        alerts=alerts,
        clock=lambda: at(3600),
    )
    service = AdminService(
        session=session,
        detector=detector,
        events=events,
        conversations=conversations,
        counters=counters,
    )
    return service, alerts


@pytest.fixture
def fixture_state() -> FixtureState:
    store = InMemoryStore()
    service, alerts = build_service(store, frozenset({"BOT-1"}))
    return FixtureState(store=store, alerts=alerts, service=service)


@pytest.mark.asyncio
async def test_debug_view_includes_state_and_history(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    bot = log_assignment(store, "42", "BOT-1", observed_at=at(1))
    human = log_assignment(store, "42", "AGENT-7", observed_at=at(2))
    await fixture_state.service.detector.process_events([bot.id, human.id])

    debug = await fixture_state.service.get_conversation_debug("42")

    assert debug.state is not None
    assert debug.state.escalated
    assert debug.ownership == OwnershipState.ESCALATED
    assert [event.property_value for event in debug.events] == ["BOT-1", "AGENT-7"]


@pytest.mark.asyncio
async def test_debug_view_for_unknown_conversation(fixture_state: FixtureState) -> None:
    with pytest.raises(ConversationStateNotFoundError):
        await fixture_state.service.get_conversation_debug("missing")


@pytest.mark.asyncio
async def test_replay_processes_pending_events_in_order(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    log_assignment(store, "42", "AGENT-7", observed_at=at(2))
    log_assignment(store, "42", "BOT-1", observed_at=at(1))

    result = await fixture_state.service.replay_conversation("42")

    assert not result.rebuilt
    assert [item.outcome for item in result.results] == [
        DetectionOutcome.UPDATED,
        DetectionOutcome.ESCALATED,
    ]
    assert store.escalated == 1
    assert fixture_state.alerts.kinds() == [AlertKind.ESCALATION]


@pytest.mark.asyncio
async def test_replay_with_nothing_pending_is_a_noop(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    bot = log_assignment(store, "42", "BOT-1", observed_at=at(1))
    await fixture_state.service.detector.process_event(bot.id)

    result = await fixture_state.service.replay_conversation("42")

    assert result.results == []


@pytest.mark.asyncio
async def test_rebuild_retracts_and_recounts_once(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    events = [
        log_assignment(store, "42", "BOT-1", observed_at=at(1)),
        log_assignment(store, "42", "AGENT-7", observed_at=at(2)),
    ]
    await fixture_state.service.detector.process_events([event.id for event in events])
    assert store.escalated == 1

    result = await fixture_state.service.replay_conversation("42", rebuild=True)

    assert result.rebuilt
    assert result.counter_delta == -1
    assert [item.outcome for item in result.results] == [
        DetectionOutcome.UPDATED,
        DetectionOutcome.ESCALATED,
    ]
    assert store.escalated == 1
    state = store.state("42")
    assert state is not None
    assert state.escalation_counted
    assert fixture_state.alerts.kinds() == [AlertKind.ESCALATION]


@pytest.mark.asyncio
async def test_rebuild_of_closed_conversation_keeps_counter(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    events = [
        log_assignment(store, "42", "BOT-1", observed_at=at(1)),
        log_assignment(store, "42", "AGENT-7", observed_at=at(2)),
        log_status(store, "42", "CLOSED", observed_at=at(3)),
    ]
    await fixture_state.service.detector.process_events([event.id for event in events])

    result = await fixture_state.service.replay_conversation("42", rebuild=True)

    assert result.counter_delta == 0
    assert store.escalated == 0
    # Only the original deliveries alerted.
    assert fixture_state.alerts.kinds() == [AlertKind.ESCALATION, AlertKind.CLOSURE]


@pytest.mark.asyncio
async def test_replay_unknown_conversation(fixture_state: FixtureState) -> None:
    with pytest.raises(ConversationStateNotFoundError):
        await fixture_state.service.replay_conversation("missing")


@pytest.mark.asyncio
async def test_replay_requires_bot_ids() -> None:
    store = InMemoryStore()
    service, _ = build_service(store, frozenset())
    log_assignment(store, "42", "AGENT-7", observed_at=at(1))

    with pytest.raises(EscalationDetectionDisabledError):
        await service.replay_conversation("42", rebuild=True)
