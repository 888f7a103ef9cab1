from enum import Enum, auto


class SessionState(Enum):
    IDLE = auto()
    CONNECTING = auto()
    STREAMING = auto()
    FINALIZING = auto()
    CLOSED = auto()
    ERRORED = auto()


VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.CONNECTING, SessionState.CLOSED},
    SessionState.CONNECTING: {SessionState.STREAMING, SessionState.FINALIZING, SessionState.ERRORED},
    SessionState.STREAMING: {SessionState.FINALIZING, SessionState.ERRORED, SessionState.CLOSED},
    SessionState.FINALIZING: {SessionState.CLOSED},
    SessionState.ERRORED: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


class PushToTalkStatus(Enum):
    IDLE = auto()
    CONNECTING = auto()
    LISTENING = auto()
    ERROR = auto()


class InvalidTransitionError(Exception):
    pass


def validate_transition(current: SessionState, target: SessionState) -> None:
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot transition from {current.name} to {target.name}")
