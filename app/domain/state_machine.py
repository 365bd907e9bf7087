from collections.abc import Collection
from dataclasses import dataclass, replace
from datetime import datetime

from app.domain.enums import AlertKind, ConversationStatus, OwnershipState

UNKNOWN_BOT = "unknown-bot"


@dataclass(frozen=True, slots=True)
class ConversationSnapshot:
    conversation_id: str
    current_assignee: str | None = None
    has_had_bot_assignment: bool = False
    escalated: bool = False
    escalated_at: datetime | None = None
    escalated_from: str | None = None
    escalated_to: str | None = None
    escalation_counted: bool = False
    status: ConversationStatus = ConversationStatus.OPEN
    closed_at: datetime | None = None
    last_assignment_at: datetime | None = None
    last_status_at: datetime | None = None
    version: int | None = None


@dataclass(frozen=True, slots=True)
class Transition:
    state: ConversationSnapshot
    counter_delta: int = 0
    alert: AlertKind | None = None
    escalated_from: str | None = None
    changed: bool = True

    @property
    def is_escalation(self) -> bool:
        return self.alert == AlertKind.ESCALATION


class ConversationLifecycle:
    """Escalation state machine for a single conversation.

    Every method is a pure function of the stored snapshot and one event; the
    caller persists ``Transition.state`` and applies ``counter_delta`` to the
    shared escalated-session counter in the same unit of work.

    Ownership moves ``unassigned -> bot_owned -> escalated -> closed``, or
    ``unassigned -> human_owned -> closed`` when no bot was ever involved.
    """

    @staticmethod
    def ownership(
        snapshot: ConversationSnapshot | None,
        bot_ids: Collection[str],
    ) -> OwnershipState:
        if snapshot is None or snapshot.current_assignee is None:
            if snapshot is not None and snapshot.status == ConversationStatus.CLOSED:
                return OwnershipState.CLOSED
            return OwnershipState.UNASSIGNED
        if snapshot.status == ConversationStatus.CLOSED:
            return OwnershipState.CLOSED
        if snapshot.current_assignee in bot_ids:
            return OwnershipState.BOT_OWNED
        if snapshot.escalated:
            return OwnershipState.ESCALATED
        return OwnershipState.HUMAN_OWNED

    @classmethod
    def assign(
        cls,
        current: ConversationSnapshot | None,
        *,
        conversation_id: str,
        assignee: str,
        observed_at: datetime,
        bot_ids: Collection[str],
        now: datetime,
        prior_bot_assignee: str | None = None,
    ) -> Transition:
        base = current or ConversationSnapshot(conversation_id=conversation_id)
        stale = (
            base.last_assignment_at is not None
            and observed_at < base.last_assignment_at
        )
        # A newer close or reopen has already settled the episode this
        # assignment belongs to.
        settled = base.last_status_at is not None and observed_at < base.last_status_at

        if assignee in bot_ids:
            if stale or settled:
                # An older bot assignment still proves bot history, but must
                # not take ownership back from a newer assignee.
                if base.has_had_bot_assignment:
                    return Transition(state=base, changed=False)
                return Transition(state=replace(base, has_had_bot_assignment=True))

            return Transition(
                state=replace(
                    base,
                    current_assignee=assignee,
                    has_had_bot_assignment=True,
                    status=ConversationStatus.OPEN,
                    closed_at=None,
                    last_assignment_at=observed_at,
                )
            )

        if stale:
            return Transition(state=base, changed=False)

        if current is None:
            is_escalation = prior_bot_assignee is not None
            escalated_from = prior_bot_assignee
        else:
            previous = current.current_assignee
            previous_is_bot = previous is not None and previous in bot_ids
            is_escalation = previous_is_bot or (
                current.has_had_bot_assignment and not current.escalated
            )
            escalated_from = previous if previous_is_bot else UNKNOWN_BOT

        if settled:
            if not is_escalation or base.escalated:
                return Transition(state=base, changed=False)
            # Recorded as history only; the escalation ended before the
            # status change that is already stored.
            return Transition(
                state=replace(
                    base,
                    has_had_bot_assignment=True,
                    escalated=True,
                    escalated_at=now,
                    escalated_from=escalated_from,
                    escalated_to=assignee,
                )
            )

        reassigned = replace(
            base,
            current_assignee=assignee,
            status=ConversationStatus.OPEN,
            closed_at=None,
            last_assignment_at=observed_at,
        )

        if not is_escalation or base.escalation_counted:
            return Transition(state=reassigned)

        return Transition(
            state=replace(
                reassigned,
                has_had_bot_assignment=True,
                escalated=True,
                escalated_at=now,
                escalated_from=escalated_from,
                escalated_to=assignee,
                escalation_counted=True,
            ),
            counter_delta=1,
            alert=AlertKind.ESCALATION,
            escalated_from=escalated_from,
        )

    @staticmethod
    def is_outdated(snapshot: ConversationSnapshot, observed_at: datetime | None) -> bool:
        """True when a status event predates the last stored assignment or status change."""
        if observed_at is None:
            return False
        stamps = [
            stamp
            for stamp in (snapshot.last_assignment_at, snapshot.last_status_at)
            if stamp is not None
        ]
        return bool(stamps) and observed_at < max(stamps)

    @classmethod
    def close(
        cls,
        current: ConversationSnapshot | None,
        *,
        conversation_id: str,
        now: datetime,
        observed_at: datetime | None = None,
    ) -> Transition:
        base = current or ConversationSnapshot(conversation_id=conversation_id)
        if cls.is_outdated(base, observed_at):
            return Transition(state=base, changed=False)

        already_closed = current is not None and current.status == ConversationStatus.CLOSED
        counter_delta = -1 if base.escalation_counted else 0
        closed = replace(
            base,
            status=ConversationStatus.CLOSED,
            closed_at=base.closed_at if already_closed else now,
            escalation_counted=False,
            last_status_at=observed_at or base.last_status_at,
        )
        return Transition(
            state=closed,
            counter_delta=counter_delta,
            alert=None if already_closed else AlertKind.CLOSURE,
            changed=(
                not already_closed
                or counter_delta != 0
                or closed.last_status_at != base.last_status_at
            ),
        )

    @classmethod
    def reopen(
        cls,
        current: ConversationSnapshot | None,
        *,
        conversation_id: str,
        observed_at: datetime | None = None,
    ) -> Transition:
        base = current or ConversationSnapshot(conversation_id=conversation_id)
        # Nothing stored yet means the conversation is already implicitly open.
        if current is None or current.status == ConversationStatus.OPEN:
            return Transition(state=base, changed=False)
        if cls.is_outdated(current, observed_at):
            return Transition(state=base, changed=False)
        return Transition(
            state=replace(
                base,
                status=ConversationStatus.OPEN,
                closed_at=None,
                last_status_at=observed_at or base.last_status_at,
            )
        )

    @staticmethod
    def retract(current: ConversationSnapshot) -> int:
        """Counter delta needed to forget a stored conversation entirely."""
        return -1 if current.escalation_counted else 0
