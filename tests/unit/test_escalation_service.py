import asyncio
import logging
from dataclasses import dataclass

import pytest

from app.core.locks import KeyedAsyncLock
from app.domain.enums import AlertKind, ConversationStatus, DetectionOutcome, SubscriptionType
from app.domain.state_machine import UNKNOWN_BOT, ConversationSnapshot
from app.services.escalation_service import DETECTOR_SOURCE, EscalationDetector
from tests.unit.fakes import (
    FakeConversationStateRepository,
    FakeSession,
    FakeSupportCounter,
    FakeSupportCounterRepository,
    FakeWebhookEventRepository,
    InMemoryStore,
    RecordingAlerts,
    at,
    log_assignment,
    log_event,
    log_status,
)

BOT_IDS = frozenset({"BOT-1", "BOT-2"})


@dataclass(slots=True)
class FixtureState:
    store: InMemoryStore
    session: FakeSession
    alerts: RecordingAlerts
    detector: EscalationDetector


def build_detector(
    store: InMemoryStore,
    *,
    bot_ids: frozenset[str] = BOT_IDS,
    conflicts: int = 0,
    fail_on_delta: bool = False,
    max_attempts: int = 3,
    alerts: RecordingAlerts | None = None,
    locks: KeyedAsyncLock | None = None,
) -> tuple[EscalationDetector, FakeSession, RecordingAlerts]:
    session = FakeSession(store)
    alerts = alerts or RecordingAlerts()
    detector = EscalationDetector(
        session,
        bot_ids,
        max_attempts=max_attempts,
        events=FakeWebhookEventRepository(store),
        conversations=FakeConversationStateRepository(store, conflicts=conflicts),
        counters=FakeSupportCounterRepository(store, fail_on_delta=fail_on_delta),
        alerts=alerts,
        locks=locks,
        clock=lambda: at(3600),
    )
    return detector, session, alerts


@pytest.fixture
def fixture_state() -> FixtureState:
    store = InMemoryStore()
    detector, session, alerts = build_detector(store)
    return FixtureState(store=store, session=session, alerts=alerts, detector=detector)


@pytest.mark.asyncio
async def test_bot_then_human_escalates_once(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    bot = log_assignment(store, "c-1", "BOT-1", observed_at=at(1))
    human = log_assignment(store, "c-1", "AGENT-7", observed_at=at(2))

    first = await fixture_state.detector.process_event(bot.id)
    second = await fixture_state.detector.process_event(human.id)

    assert first.outcome == DetectionOutcome.UPDATED
    assert second.outcome == DetectionOutcome.ESCALATED
    assert second.counter_delta == 1
    assert second.escalated_from == "BOT-1"
    assert store.escalated == 1
    assert fixture_state.alerts.kinds() == [AlertKind.ESCALATION]

    state = store.state("c-1")
    assert state is not None
    assert state.escalated and state.escalation_counted
    assert state.current_assignee == "AGENT-7"


@pytest.mark.asyncio
async def test_human_processed_before_bot_uses_history_fallback(
    fixture_state: FixtureState,
) -> None:
    store = fixture_state.store
    bot = log_assignment(store, "c-2", "BOT-2", observed_at=at(1))
    human = log_assignment(store, "c-2", "AGENT-3", observed_at=at(2))

    human_result = await fixture_state.detector.process_event(human.id)
    bot_result = await fixture_state.detector.process_event(bot.id)

    assert human_result.outcome == DetectionOutcome.ESCALATED
    assert human_result.escalated_from == "BOT-2"
    assert bot_result.outcome == DetectionOutcome.UPDATED
    assert store.escalated == 1

    state = store.state("c-2")
    assert state is not None
    assert state.current_assignee == "AGENT-3"
    assert state.escalated_from == "BOT-2"


@pytest.mark.asyncio
async def test_human_only_conversation_is_never_escalated(
    fixture_state: FixtureState,
) -> None:
    store = fixture_state.store
    human = log_assignment(store, "c-3", "AGENT-1", observed_at=at(1))

    result = await fixture_state.detector.process_event(human.id)

    assert result.outcome == DetectionOutcome.UPDATED
    state = store.state("c-3")
    assert state is not None
    assert not state.escalated
    assert not state.has_had_bot_assignment
    assert store.escalated is None
    assert fixture_state.alerts.alerts == []


@pytest.mark.asyncio
async def test_bot_assigned_after_human_does_not_escalate(
    fixture_state: FixtureState,
) -> None:
    store = fixture_state.store
    human = log_assignment(store, "c-4", "AGENT-1", observed_at=at(1))
    bot = log_assignment(store, "c-4", "BOT-1", observed_at=at(2))

    await fixture_state.detector.process_event(human.id)
    result = await fixture_state.detector.process_event(bot.id)

    assert result.outcome == DetectionOutcome.UPDATED
    state = store.state("c-4")
    assert state is not None
    assert state.current_assignee == "BOT-1"
    assert not state.escalated
    assert not state.escalation_counted
    assert store.escalated is None


@pytest.mark.asyncio
async def test_handover_back_to_human_after_late_bot_escalates(
    fixture_state: FixtureState,
) -> None:
    store = fixture_state.store
    events = [
        log_assignment(store, "c-5", "AGENT-1", observed_at=at(1)),
        log_assignment(store, "c-5", "BOT-1", observed_at=at(2)),
        log_assignment(store, "c-5", "AGENT-2", observed_at=at(3)),
    ]

    results = await fixture_state.detector.process_events([event.id for event in events])

    assert [result.outcome for result in results] == [
        DetectionOutcome.UPDATED,
        DetectionOutcome.UPDATED,
        DetectionOutcome.ESCALATED,
    ]
    assert store.escalated == 1


@pytest.mark.asyncio
async def test_conversation_42_scenario() -> None:
    store = InMemoryStore()
    detector, _, alerts = build_detector(store, bot_ids=frozenset({"BOT-1"}))
    bot = log_assignment(store, "42", "BOT-1", observed_at=at(1))
    human = log_assignment(store, "42", "AGENT-7", observed_at=at(2))

    await detector.process_event(bot.id)
    await detector.process_event(human.id)

    state = store.state("42")
    assert state is not None
    assert state.escalated is True
    assert state.escalated_from == "BOT-1"
    assert state.escalated_to == "AGENT-7"
    assert state.escalation_counted is True
    assert store.escalated == 1
    assert store.committed.counter is not None
    assert store.committed.counter.source == DETECTOR_SOURCE
    assert alerts.alerts[0].assignee == "AGENT-7"


@pytest.mark.asyncio
async def test_reassignment_among_humans_counts_once(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    events = [
        log_assignment(store, "c-6", "BOT-1", observed_at=at(1)),
        log_assignment(store, "c-6", "AGENT-1", observed_at=at(2)),
        log_assignment(store, "c-6", "AGENT-2", observed_at=at(3)),
    ]

    results = await fixture_state.detector.process_events([event.id for event in events])

    assert results[2].outcome == DetectionOutcome.UPDATED
    assert store.escalated == 1
    state = store.state("c-6")
    assert state is not None
    assert state.current_assignee == "AGENT-2"
    assert state.escalated_to == "AGENT-1"
    assert fixture_state.alerts.kinds() == [AlertKind.ESCALATION]


@pytest.mark.asyncio
async def test_escalation_without_known_bot_reports_unknown_bot(
    fixture_state: FixtureState,
) -> None:
    store = fixture_state.store
    store.working.states["c-7"] = ConversationSnapshot(
        conversation_id="c-7",
        current_assignee="AGENT-1",
        has_had_bot_assignment=True,
        last_assignment_at=at(1),
        version=1,
    )
    store.commit()
    human = log_assignment(store, "c-7", "AGENT-2", observed_at=at(2))

    result = await fixture_state.detector.process_event(human.id)

    assert result.outcome == DetectionOutcome.ESCALATED
    assert result.escalated_from == UNKNOWN_BOT
    state = store.state("c-7")
    assert state is not None
    assert state.escalated_from == UNKNOWN_BOT
    assert state.escalated_to == "AGENT-2"
    assert state.version == 2


@pytest.mark.asyncio
async def test_closure_after_escalation_decrements(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    events = [
        log_assignment(store, "c-8", "BOT-1", observed_at=at(1)),
        log_assignment(store, "c-8", "AGENT-1", observed_at=at(2)),
        log_status(store, "c-8", "CLOSED", observed_at=at(3)),
    ]

    results = await fixture_state.detector.process_events([event.id for event in events])

    assert results[2].outcome == DetectionOutcome.CLOSED
    assert results[2].counter_delta == -1
    assert store.escalated == 0
    state = store.state("c-8")
    assert state is not None
    assert state.status == ConversationStatus.CLOSED
    assert state.escalated is True
    assert state.escalation_counted is False
    assert state.closed_at == at(3600)
    assert fixture_state.alerts.kinds() == [AlertKind.ESCALATION, AlertKind.CLOSURE]


@pytest.mark.asyncio
async def test_repeated_closures_never_go_below_zero(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    events = [
        log_status(store, "c-9", "CLOSED", observed_at=at(1)),
        log_event(
            store,
            "c-9",
            observed_at=at(2),
            subscription_type=SubscriptionType.CONVERSATION_DELETION.value,
        ),
        log_status(store, "c-10", "CLOSED", observed_at=at(3)),
    ]

    results = await fixture_state.detector.process_events([event.id for event in events])

    assert all(result.outcome == DetectionOutcome.CLOSED for result in results)
    assert all(result.counter_delta == 0 for result in results)
    assert (store.escalated or 0) == 0
    # Only the first closure of each conversation alerts.
    assert fixture_state.alerts.kinds() == [AlertKind.CLOSURE, AlertKind.CLOSURE]


@pytest.mark.asyncio
async def test_closure_decrement_is_floored_at_zero(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    bot = log_assignment(store, "c-11", "BOT-1", observed_at=at(1))
    human = log_assignment(store, "c-11", "AGENT-1", observed_at=at(2))
    await fixture_state.detector.process_events([bot.id, human.id])

    store.working.counter = FakeSupportCounter(sessions_escalated=0)
    store.commit()
    closed = log_status(store, "c-11", "CLOSED", observed_at=at(3))

    result = await fixture_state.detector.process_event(closed.id)

    assert result.outcome == DetectionOutcome.CLOSED
    assert store.escalated == 0


@pytest.mark.asyncio
async def test_reopen_then_bot_and_human_escalates_again(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    events = [
        log_assignment(store, "c-12", "BOT-1", observed_at=at(1)),
        log_assignment(store, "c-12", "AGENT-1", observed_at=at(2)),
        log_status(store, "c-12", "CLOSED", observed_at=at(3)),
        log_status(store, "c-12", "OPEN", observed_at=at(4)),
        log_assignment(store, "c-12", "AGENT-2", observed_at=at(5)),
        log_assignment(store, "c-12", "BOT-1", observed_at=at(6)),
        log_assignment(store, "c-12", "AGENT-3", observed_at=at(7)),
    ]

    results = await fixture_state.detector.process_events([event.id for event in events])

    assert results[3].outcome == DetectionOutcome.REOPENED
    assert results[4].outcome == DetectionOutcome.UPDATED
    assert results[6].outcome == DetectionOutcome.ESCALATED
    assert store.escalated == 1


@pytest.mark.asyncio
async def test_empty_bot_ids_disables_detection(caplog: pytest.LogCaptureFixture) -> None:
    store = InMemoryStore()
    detector, session, alerts = build_detector(store, bot_ids=frozenset())
    human = log_assignment(store, "c-13", "AGENT-1", observed_at=at(1))

    with caplog.at_level(logging.WARNING, logger="app.services.escalation_service"):
        result = await detector.process_event(human.id)

    assert result.outcome == DetectionOutcome.DISABLED
    assert store.committed.states == {}
    assert store.committed.counter is None
    assert store.event(human.id).processed_at is None
    assert session.commits == 0
    assert alerts.alerts == []
    assert "escalation detection disabled" in caplog.text


@pytest.mark.asyncio
async def test_replaying_processed_event_is_a_duplicate(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    bot = log_assignment(store, "c-14", "BOT-1", observed_at=at(1))
    human = log_assignment(store, "c-14", "AGENT-1", observed_at=at(2))
    await fixture_state.detector.process_events([bot.id, human.id])

    replay = await fixture_state.detector.process_event(human.id)

    assert replay.outcome == DetectionOutcome.DUPLICATE
    assert store.escalated == 1
    assert len(fixture_state.alerts.alerts) == 1


@pytest.mark.asyncio
async def test_stale_state_write_is_retried() -> None:
    store = InMemoryStore()
    detector, session, _ = build_detector(store, conflicts=1)
    bot = log_assignment(store, "c-15", "BOT-1", observed_at=at(1))

    result = await detector.process_event(bot.id)

    assert result.outcome == DetectionOutcome.UPDATED
    assert session.rollbacks == 1
    state = store.state("c-15")
    assert state is not None
    assert state.current_assignee == "BOT-1"


@pytest.mark.asyncio
async def test_persistent_conflicts_fail_without_raising() -> None:
    store = InMemoryStore()
    detector, _, alerts = build_detector(store, conflicts=5, max_attempts=2)
    bot = log_assignment(store, "c-16", "BOT-1", observed_at=at(1))

    result = await detector.process_event(bot.id)

    assert result.outcome == DetectionOutcome.FAILED
    assert store.state("c-16") is None
    event = store.event(bot.id)
    assert event.processed_at is None
    assert event.processing_error is not None
    assert alerts.alerts == []


@pytest.mark.asyncio
async def test_counter_failure_is_logged_and_rolled_back(
    caplog: pytest.LogCaptureFixture,
) -> None:
    store = InMemoryStore()
    detector, session, alerts = build_detector(store, fail_on_delta=True)
    bot = log_assignment(store, "c-17", "BOT-1", observed_at=at(1))
    human = log_assignment(store, "c-17", "AGENT-1", observed_at=at(2))
    await detector.process_event(bot.id)

    with caplog.at_level(logging.ERROR, logger="app.services.escalation_service"):
        result = await detector.process_event(human.id)

    assert result.outcome == DetectionOutcome.FAILED
    assert "counter store unavailable" in (result.error or "")
    state = store.state("c-17")
    assert state is not None
    assert state.current_assignee == "BOT-1"
    assert not state.escalated
    failed_event = store.event(human.id)
    assert failed_event.processing_error is not None
    assert failed_event.processing_error.startswith("counter_update")
    assert session.rollbacks >= 1
    assert alerts.alerts == []

    record = next(r for r in caplog.records if r.getMessage() == "Escalation detection failed")
    assert record.conversation_id == "c-17"
    assert record.assignee == "AGENT-1"
    assert record.stage == "counter_update"


@pytest.mark.asyncio
async def test_concurrent_events_for_one_conversation_count_once() -> None:
    store = InMemoryStore()
    locks = KeyedAsyncLock()
    alerts = RecordingAlerts()
    bot = log_assignment(store, "c-18", "BOT-1", observed_at=at(1))
    first_human = log_assignment(store, "c-18", "AGENT-1", observed_at=at(2))
    second_human = log_assignment(store, "c-18", "AGENT-2", observed_at=at(3))

    detectors = [build_detector(store, locks=locks, alerts=alerts)[0] for _ in range(3)]
    await detectors[0].process_event(bot.id)
    results = await asyncio.gather(
        detectors[1].process_event(first_human.id),
        detectors[2].process_event(second_human.id),
    )

    outcomes = sorted(result.outcome.value for result in results)
    assert outcomes == [DetectionOutcome.ESCALATED.value, DetectionOutcome.UPDATED.value]
    assert store.escalated == 1
    assert alerts.kinds() == [AlertKind.ESCALATION]
    assert locks.active_keys() == 0


@pytest.mark.asyncio
async def test_new_conversation_alerts_without_state(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    created = log_event(
        store,
        "c-19",
        observed_at=at(1),
        subscription_type=SubscriptionType.CONVERSATION_CREATION.value,
    )

    result = await fixture_state.detector.process_event(created.id)

    assert result.outcome == DetectionOutcome.ALERTED
    assert store.state("c-19") is None
    assert fixture_state.alerts.kinds() == [AlertKind.NEW_CHAT]
    assert store.event(created.id).processed_at is not None


@pytest.mark.asyncio
async def test_unrelated_events_are_ignored(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    ticket = log_event(
        store,
        "c-20",
        observed_at=at(1),
        subscription_type=SubscriptionType.TICKET_PROPERTY_CHANGE.value,
        property_name="hs_pipeline_stage",
        property_value="2",
    )

    result = await fixture_state.detector.process_event(ticket.id)

    assert result.outcome == DetectionOutcome.IGNORED
    assert store.state("c-20") is None
    assert store.event(ticket.id).processed_at is not None


@pytest.mark.asyncio
async def test_history_lookup_ignores_later_and_current_events(
    fixture_state: FixtureState,
) -> None:
    store = fixture_state.store
    human = log_assignment(store, "c-21", "AGENT-1", observed_at=at(1))
    log_assignment(store, "c-21", "BOT-1", observed_at=at(2))

    found = await fixture_state.detector.check_recent_bot_assignment(
        "c-21",
        observed_before=human.observed_at,
        exclude_event_id=human.id,
    )

    assert found is None


@pytest.mark.asyncio
async def test_unassignment_is_treated_as_human(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    bot = log_assignment(store, "c-22", "BOT-1", observed_at=at(1))
    cleared = log_assignment(store, "c-22", None, observed_at=at(2))

    results = await fixture_state.detector.process_events([bot.id, cleared.id])

    assert results[1].outcome == DetectionOutcome.ESCALATED
    state = store.state("c-22")
    assert state is not None
    assert state.current_assignee == "unassigned"


@pytest.mark.asyncio
async def test_assignment_older_than_closure_does_not_reopen(
    fixture_state: FixtureState,
) -> None:
    store = fixture_state.store
    bot = log_assignment(store, "c-20", "BOT-1", observed_at=at(1))
    human = log_assignment(store, "c-20", "AGENT-7", observed_at=at(2))
    closed = log_status(store, "c-20", "CLOSED", observed_at=at(3))

    results = await fixture_state.detector.process_events([bot.id, closed.id, human.id])

    assert results[2].outcome == DetectionOutcome.UPDATED
    assert results[2].counter_delta == 0
    assert store.escalated == 0
    state = store.state("c-20")
    assert state is not None
    assert state.status == ConversationStatus.CLOSED
    assert state.escalated
    assert not state.escalation_counted
    assert fixture_state.alerts.kinds() == [AlertKind.CLOSURE]


@pytest.mark.asyncio
async def test_closure_older_than_reassignment_is_ignored(
    fixture_state: FixtureState,
) -> None:
    store = fixture_state.store
    bot = log_assignment(store, "c-21", "BOT-1", observed_at=at(1))
    closed = log_status(store, "c-21", "CLOSED", observed_at=at(2))
    human = log_assignment(store, "c-21", "AGENT-7", observed_at=at(3))

    results = await fixture_state.detector.process_events([bot.id, human.id, closed.id])

    assert results[1].outcome == DetectionOutcome.ESCALATED
    assert results[2].counter_delta == 0
    assert store.escalated == 1
    state = store.state("c-21")
    assert state is not None
    assert state.status == ConversationStatus.OPEN
    assert state.escalation_counted
    assert fixture_state.alerts.kinds() == [AlertKind.ESCALATION]


@pytest.mark.asyncio
async def test_reopen_older_than_closure_is_ignored(fixture_state: FixtureState) -> None:
    store = fixture_state.store
    bot = log_assignment(store, "c-22", "BOT-1", observed_at=at(1))
    reopened = log_status(store, "c-22", "OPEN", observed_at=at(2))
    closed = log_status(store, "c-22", "CLOSED", observed_at=at(3))

    await fixture_state.detector.process_events([bot.id, closed.id, reopened.id])

    state = store.state("c-22")
    assert state is not None
    assert state.status == ConversationStatus.CLOSED
    assert state.last_status_at == at(3)
