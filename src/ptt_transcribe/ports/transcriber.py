from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from ptt_transcribe.domain.state import SessionState

TranscriptSink = Callable[[str], None]
ErrorSink = Callable[[str], None]


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool
    from_finalize: bool = False


class TranscriptionSessionPort(Protocol):
    @property
    def state(self) -> SessionState: ...
    @property
    def sample_rate(self) -> int: ...
    async def connect(self) -> None: ...
    async def send(self, block: bytes) -> None: ...
    async def finalize_and_close(self) -> None: ...


SessionFactory = Callable[[TranscriptSink, ErrorSink], TranscriptionSessionPort]
