import pytest

from voice_lab.state_machine import ControllerState, StateTransition


@pytest.mark.parametrize("from_state,to_state", [
    (ControllerState.IDLE, ControllerState.LISTENING),
    (ControllerState.LISTENING, ControllerState.PROCESSING),
    (ControllerState.LISTENING, ControllerState.IDLE),
    (ControllerState.PROCESSING, ControllerState.SPEAKING),
    (ControllerState.PROCESSING, ControllerState.IDLE),
    (ControllerState.SPEAKING, ControllerState.LISTENING),
    (ControllerState.SPEAKING, ControllerState.IDLE),
])
def test_allowed_transitions(from_state, to_state):
    assert StateTransition.is_valid_transition(from_state, to_state)


@pytest.mark.parametrize("from_state,to_state", [
    (ControllerState.IDLE, ControllerState.PROCESSING),
    (ControllerState.IDLE, ControllerState.SPEAKING),
    (ControllerState.LISTENING, ControllerState.SPEAKING),
    (ControllerState.PROCESSING, ControllerState.LISTENING),
    (ControllerState.SPEAKING, ControllerState.PROCESSING),
])
def test_rejected_transitions(from_state, to_state):
    assert not StateTransition.is_valid_transition(from_state, to_state)


def test_every_non_idle_state_can_be_interrupted():
    for state in ControllerState:
        if state != ControllerState.IDLE:
            assert ControllerState.IDLE in StateTransition.get_allowed_transitions(state)


def test_invalid_transition_is_refused_by_controller(controller, transitions, caplog):
    assert controller.set_state(ControllerState.SPEAKING) is False
    assert controller.state == ControllerState.IDLE
    assert transitions == []
    assert "Invalid state transition" in caplog.text
