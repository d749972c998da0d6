"""State machine guards for buyer requests, offers, escrow accounts and milestones.

Uses python-statemachine to enforce legal state transitions at the domain level.
Services fire the named event on a throwaway machine before issuing the
conditional UPDATE, so an illegal transition fails fast with a readable error
while the UPDATE's own WHERE clause still protects against concurrent callers.

Transition tables:

    Buyer request
        OPEN      -> CLOSED     (close | expire | accept_offer)

    Offer
        PENDING   -> ACCEPTED   (accept)
        PENDING   -> REJECTED   (reject)

    Escrow account
        PENDING   -> FUNDED     (fund | partial_release)
        FUNDED    -> FUNDED     (partial_release)
        PENDING   -> RELEASED   (full_release)
        FUNDED    -> RELEASED   (full_release)
        PENDING   -> DISPUTED   (dispute)
        FUNDED    -> DISPUTED   (dispute)
        DISPUTED  -> FUNDED     (resolve_dispute)
        PENDING   -> REFUNDED   (refund)
        FUNDED    -> REFUNDED   (refund)
        DISPUTED  -> REFUNDED   (refund)

    Milestone
        PENDING   -> APPROVED   (approve)
        PENDING   -> REJECTED   (reject)
        APPROVED  -> RELEASED   (release)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from marketplace_settlement.domain.exceptions import InvalidStateTransitionError


class GuardedStateMachine(StateMachine):
    """Abstract base: a machine that starts at a persisted status string."""

    def __init__(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the status enum)."""
        return str(self.current_state.value)

    @property
    def is_terminal(self) -> bool:
        return bool(self.current_state.final)


class BuyerRequestStateMachine(GuardedStateMachine):
    OPEN = State("OPEN", initial=True)
    CLOSED = State("CLOSED", final=True)

    close = OPEN.to(CLOSED)
    expire = OPEN.to(CLOSED)
    accept_offer = OPEN.to(CLOSED)


class OfferStateMachine(GuardedStateMachine):
    PENDING = State("PENDING", initial=True)
    ACCEPTED = State("ACCEPTED", final=True)
    REJECTED = State("REJECTED", final=True)

    accept = PENDING.to(ACCEPTED)
    reject = PENDING.to(REJECTED)


class EscrowAccountStateMachine(GuardedStateMachine):
    """Escrow account lifecycle. RELEASED and REFUNDED are never re-entered."""

    PENDING = State("PENDING", initial=True)
    FUNDED = State("FUNDED")
    DISPUTED = State("DISPUTED")
    RELEASED = State("RELEASED", final=True)
    REFUNDED = State("REFUNDED", final=True)

    # Funding
    fund = PENDING.to(FUNDED)

    # Milestone releases
    partial_release = PENDING.to(FUNDED) | FUNDED.to.itself()
    full_release = PENDING.to(RELEASED) | FUNDED.to(RELEASED)

    # Administrative
    dispute = PENDING.to(DISPUTED) | FUNDED.to(DISPUTED)
    resolve_dispute = DISPUTED.to(FUNDED)
    refund = PENDING.to(REFUNDED) | FUNDED.to(REFUNDED) | DISPUTED.to(REFUNDED)


class MilestoneStateMachine(GuardedStateMachine):
    PENDING = State("PENDING", initial=True)
    APPROVED = State("APPROVED")
    REJECTED = State("REJECTED", final=True)
    RELEASED = State("RELEASED", final=True)

    approve = PENDING.to(APPROVED)
    reject = PENDING.to(REJECTED)
    release = APPROVED.to(RELEASED)


def validate_transition(
    machine_cls: type[GuardedStateMachine],
    current_status: str,
    event_name: str,
) -> str:
    """Validate a state transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns
    the resulting status string.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = machine_cls(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}' for {machine_cls.__name__}"
        )

    event_method()
    return sm.status


def fire_transition(
    entity: str,
    machine_cls: type[GuardedStateMachine],
    current_status: str,
    event_name: str,
) -> str:
    """Like validate_transition, but raises the domain conflict error instead."""
    try:
        return validate_transition(machine_cls, current_status, event_name)
    except (TransitionNotAllowed, ValueError) as err:
        raise InvalidStateTransitionError(entity, current_status, event_name) from err
