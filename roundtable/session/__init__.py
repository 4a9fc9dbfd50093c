"""Session lifecycle and agenda-phase tracking."""
from .state_machine import BACKWARD, FORWARD, TRANSITIONS, SessionStateMachine

__all__ = ["BACKWARD", "FORWARD", "TRANSITIONS", "SessionStateMachine"]
