"""
Tests for the booking transition table.
"""

import pytest

from eventpass.core.errors import AlreadyTerminal
from eventpass.domain.state_machine import BookingStateMachine, BookingStatus, InvalidTransition

P, CF, CX, CO = (
    BookingStatus.PENDING,
    BookingStatus.CONFIRMED,
    BookingStatus.CANCELLED,
    BookingStatus.COMPLETED,
)


@pytest.mark.parametrize(
    "from_status,to_status",
    [(P, CF), (P, CX), (CF, CX), (CF, CO)],
)
def test_legal_transitions(from_status, to_status):
    assert BookingStateMachine.can_transition(from_status, to_status)
    BookingStateMachine.validate_transition(1, from_status, to_status)


@pytest.mark.parametrize("from_status,to_status", [(P, CO), (CF, P), (P, P), (CF, CF)])
def test_illegal_transitions_from_live_states(from_status, to_status):
    assert not BookingStateMachine.can_transition(from_status, to_status)
    with pytest.raises(InvalidTransition):
        BookingStateMachine.validate_transition(1, from_status, to_status)


@pytest.mark.parametrize("terminal", [CX, CO])
@pytest.mark.parametrize("target", [P, CF, CX, CO])
def test_nothing_leaves_a_terminal_state(terminal, target):
    assert BookingStateMachine.is_terminal(terminal)
    with pytest.raises(AlreadyTerminal) as exc:
        BookingStateMachine.validate_transition(7, terminal, target)
    assert exc.value.booking_id == 7
    assert exc.value.status_code == 409


def test_sources_for_cancelled():
    assert BookingStateMachine.sources_for(CX) == frozenset({P, CF})
    assert BookingStateMachine.sources_for(CO) == frozenset({CF})


def test_rejects_non_enum_status():
    with pytest.raises(TypeError):
        BookingStateMachine.can_transition("PENDING", CF)
