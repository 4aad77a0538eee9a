"""
Tests for phase transitions.
"""
import pytest

from dbaas_operator.core.state_machine import PhaseStateMachine
from dbaas_operator.models.database import Phase


@pytest.mark.parametrize("from_phase, to_phase", [
    (None, Phase.CREATING),
    (Phase.CREATING, Phase.RUNNING),
    (Phase.CREATING, Phase.INITIALIZING),
    (Phase.INITIALIZING, Phase.RUNNING),
    (Phase.RUNNING, Phase.HALTED),
    (Phase.HALTED, Phase.CREATING),
    (Phase.FAILED, Phase.CREATING),
    (Phase.RUNNING, Phase.TERMINATING),
    (Phase.RUNNING, Phase.RUNNING),
])
def test_allowed_transitions(from_phase, to_phase):
    assert PhaseStateMachine.can_transition(from_phase, to_phase)
    PhaseStateMachine.validate_transition(from_phase, to_phase)


@pytest.mark.parametrize("from_phase, to_phase", [
    (None, Phase.RUNNING),
    (Phase.HALTED, Phase.RUNNING),
    (Phase.FAILED, Phase.RUNNING),
    (Phase.TERMINATING, Phase.CREATING),
])
def test_rejected_transitions(from_phase, to_phase):
    assert not PhaseStateMachine.can_transition(from_phase, to_phase)


def test_validate_transition_names_the_database():
    with pytest.raises(ValueError, match="for database demo/mgo"):
        PhaseStateMachine.validate_transition(Phase.TERMINATING, Phase.RUNNING, database="demo/mgo")


def test_every_phase_is_terminable_except_terminating():
    for phase in Phase:
        if phase == Phase.TERMINATING:
            continue
        assert PhaseStateMachine.can_transition(phase, Phase.TERMINATING)
