"""Domain errors. HTTP routes map these to status codes."""
from __future__ import annotations


class RoundtableError(Exception):
    """Base for all roundtable errors."""


class SessionError(RoundtableError):
    pass


class InvalidTransitionError(SessionError):
    """Lifecycle command not allowed in the current state."""

    def __init__(self, command: str, state: str) -> None:
        super().__init__(f"Cannot {command} while session is {state}")
        self.command = command
        self.state = state


class SessionNotFoundError(SessionError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class AnalysisError(RoundtableError):
    """LLM call failed or returned nothing usable."""


class RateLimitExceededError(AnalysisError):
    def __init__(self, client_id: str) -> None:
        super().__init__(f"Rate limit exceeded for client {client_id}")
        self.client_id = client_id


class SnapshotError(RoundtableError):
    """Snapshot could not be decoded."""
