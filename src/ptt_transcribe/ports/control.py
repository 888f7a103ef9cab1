from dataclasses import dataclass

CONTROL_ACTIONS = ("press", "release", "toggle", "status")


@dataclass(frozen=True)
class ControlCommand:
    action: str
