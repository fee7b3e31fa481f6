"""
Check State Machine

Closed enums for a check's direction, channel, format and state, and the
transition table every lifecycle action is validated against. The table is
checked for completeness at import time, so adding a state or an action
without updating it fails loudly.
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple, TYPE_CHECKING

from .errors import InvalidStateTransition

if TYPE_CHECKING:
    from .checks import Check


class CheckDirection(Enum):
    RECEIVED = "received"  # From a customer
    ISSUED = "issued"      # To a supplier, drawn on our own account


class CheckChannel(Enum):
    """Two parallel bookkeeping channels"""
    C1 = "C1"
    C2 = "C2"


class CheckFormat(Enum):
    PHYSICAL = "physical"
    ELECTRONIC = "electronic"


class CheckState(Enum):
    REGISTERED = "registered"
    IN_PORTFOLIO = "in_portfolio"
    APPLIED_TO_PURCHASE = "applied_to_purchase"
    ENDORSED = "endorsed"
    DEPOSITED = "deposited"
    ACCREDITED = "accredited"
    REJECTED = "rejected"
    VOIDED = "voided"
    DELIVERED = "delivered"
    CLEARED = "cleared"


class CheckAction(Enum):
    DEPOSIT = "deposit"
    ACCREDIT = "accredit"
    REJECT = "reject"
    APPLY_TO_SUPPLIER = "apply_to_supplier"
    DELIVER = "deliver"
    CLEAR = "clear"
    VOID = "void"
    UPDATE = "update"


class FlowSign(Enum):
    INFLOW = "inflow"
    OUTFLOW = "outflow"


INITIAL_STATE: Dict[CheckDirection, CheckState] = {
    CheckDirection.RECEIVED: CheckState.IN_PORTFOLIO,
    CheckDirection.ISSUED: CheckState.REGISTERED,
}

TERMINAL_STATES: FrozenSet[CheckState] = frozenset({
    CheckState.ACCREDITED,
    CheckState.CLEARED,
    CheckState.VOIDED,
    CheckState.REJECTED,
})


@dataclass(frozen=True)
class TransitionRule:
    """Which directions may fire an action, from which states, into which state"""
    action: CheckAction
    valid_from: Dict[CheckDirection, FrozenSet[CheckState]]
    target: CheckState

    def applies_to(self, direction: CheckDirection) -> bool:
        return direction in self.valid_from

    def allows(self, direction: CheckDirection, state: CheckState) -> bool:
        return state in self.valid_from.get(direction, frozenset())


_R = CheckDirection.RECEIVED
_I = CheckDirection.ISSUED
_S = CheckState

TRANSITIONS: Dict[CheckAction, TransitionRule] = {
    CheckAction.DEPOSIT: TransitionRule(
        CheckAction.DEPOSIT,
        {_R: frozenset({_S.REGISTERED, _S.IN_PORTFOLIO, _S.ENDORSED, _S.APPLIED_TO_PURCHASE})},
        _S.DEPOSITED,
    ),
    CheckAction.ACCREDIT: TransitionRule(
        CheckAction.ACCREDIT,
        {_R: frozenset({_S.DEPOSITED})},
        _S.ACCREDITED,
    ),
    CheckAction.REJECT: TransitionRule(
        CheckAction.REJECT,
        {_R: frozenset({_S.DEPOSITED})},
        _S.REJECTED,
    ),
    CheckAction.APPLY_TO_SUPPLIER: TransitionRule(
        CheckAction.APPLY_TO_SUPPLIER,
        {
            _R: frozenset({_S.REGISTERED, _S.IN_PORTFOLIO}),
            _I: frozenset({_S.REGISTERED}),
        },
        _S.APPLIED_TO_PURCHASE,
    ),
    CheckAction.DELIVER: TransitionRule(
        CheckAction.DELIVER,
        {
            _R: frozenset({_S.REGISTERED, _S.IN_PORTFOLIO}),
            _I: frozenset({_S.REGISTERED, _S.APPLIED_TO_PURCHASE}),
        },
        _S.DELIVERED,
    ),
    CheckAction.CLEAR: TransitionRule(
        CheckAction.CLEAR,
        {_I: frozenset({_S.DELIVERED})},
        _S.CLEARED,
    ),
    CheckAction.VOID: TransitionRule(
        CheckAction.VOID,
        {
            _R: frozenset({_S.REGISTERED, _S.IN_PORTFOLIO, _S.APPLIED_TO_PURCHASE, _S.ENDORSED}),
            _I: frozenset({_S.REGISTERED, _S.DELIVERED}),
        },
        _S.VOIDED,
    ),
}

# Received checks that still count on being collected by us
_PENDING_INFLOW_STATES = frozenset({_S.REGISTERED, _S.IN_PORTFOLIO, _S.DEPOSITED})
# Issued checks not yet debited from our account
_PENDING_OUTFLOW_STATES = frozenset({_S.REGISTERED, _S.APPLIED_TO_PURCHASE, _S.DELIVERED})


def _verify_table() -> None:
    missing = [a for a in CheckAction if a is not CheckAction.UPDATE and a not in TRANSITIONS]
    if missing:
        raise RuntimeError(f"Transition table has no rule for: {missing}")

    named = set(INITIAL_STATE.values()) | set(TERMINAL_STATES)
    for rule in TRANSITIONS.values():
        named.add(rule.target)
        for states in rule.valid_from.values():
            named |= states
    unnamed = set(CheckState) - named
    if unnamed:
        raise RuntimeError(f"States not covered by the transition table: {unnamed}")


_verify_table()


def is_terminal(state: CheckState) -> bool:
    return state in TERMINAL_STATES


def ensure_transition(check: 'Check', action: CheckAction) -> CheckState:
    """
    Validate that ``action`` may fire on ``check`` as it stands now.

    Returns:
        The state the check moves into

    Raises:
        InvalidStateTransition: wrong direction or disallowed current state
    """
    if action is CheckAction.UPDATE:
        if is_terminal(check.state):
            raise InvalidStateTransition(
                check.state.value, action.value, check.direction.value,
                message=f"A check in terminal state '{check.state.value}' cannot be edited",
            )
        return check.state

    rule = TRANSITIONS[action]
    if not rule.applies_to(check.direction):
        raise InvalidStateTransition(
            check.state.value, action.value, check.direction.value,
            message=f"{action.value} does not apply to {check.direction.value} checks",
        )
    if not rule.allows(check.direction, check.state):
        allowed = sorted(s.value for s in rule.valid_from[check.direction])
        raise InvalidStateTransition(
            check.state.value, action.value, check.direction.value,
            details={"allowed_from": allowed},
        )
    return rule.target


def pending_cash_event(check: 'Check') -> Optional[Tuple[FlowSign, date]]:
    """
    The future cash impact a check still implies, if any.

    Received checks project an inflow on their expected collection date while
    we still hold or have deposited them. Issued checks project an outflow on
    their due date until the bank debits them. Every other state, and any
    check without the relevant date, projects nothing.
    """
    if check.direction is CheckDirection.RECEIVED:
        if check.state in _PENDING_INFLOW_STATES and check.expected_collection_date:
            return FlowSign.INFLOW, check.expected_collection_date
        return None

    if check.state in _PENDING_OUTFLOW_STATES and check.due_date:
        return FlowSign.OUTFLOW, check.due_date
    return None
