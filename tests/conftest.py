import asyncio
import os
from collections.abc import AsyncIterator, Callable
from types import SimpleNamespace

import numpy as np
import pytest

from ptt_transcribe.config import TranscribeConfig
from ptt_transcribe.domain.state import SessionState
from ptt_transcribe.ports.audio import AudioBlock


SAMPLE_RATE = 16000
BLOCK_SIZE = 4096


def generate_sine_block(
    frequency: float = 440.0,
    num_samples: int = BLOCK_SIZE,
    amplitude: float = 0.8,
    sample_rate: int = SAMPLE_RATE,
) -> AudioBlock:
    t = np.arange(num_samples) / sample_rate
    signal = np.sin(2 * np.pi * frequency * t) * amplitude
    return AudioBlock(samples=signal.astype(np.float32), sample_rate=sample_rate)


def generate_noise_block(
    num_samples: int = BLOCK_SIZE,
    amplitude: float = 0.5,
    sample_rate: int = SAMPLE_RATE,
    seed: int = 0,
) -> AudioBlock:
    rng = np.random.default_rng(seed)
    noise = rng.uniform(-1, 1, num_samples) * amplitude
    return AudioBlock(samples=noise.astype(np.float32), sample_rate=sample_rate)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout=timeout)


class FakeAudioSource:
    def __init__(self, sample_rate: int = SAMPLE_RATE, start_error: Exception | None = None) -> None:
        self._sample_rate = sample_rate
        self._start_error = start_error
        self._queue: asyncio.Queue[AudioBlock | None] | None = None
        self._active = False
        self.start_calls = 0
        self.stop_calls = 0
        self.log: list[str] | None = None

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def active(self) -> bool:
        return self._active

    async def start(self) -> None:
        self.start_calls += 1
        if self._start_error is not None:
            raise self._start_error
        if self._active:
            return
        self._active = True
        self._queue = asyncio.Queue()
        if self.log is not None:
            self.log.append("source.start")

    def stop(self) -> None:
        self.stop_calls += 1
        self._active = False
        if self._queue is not None:
            self._queue.put_nowait(None)
            self._queue = None
            if self.log is not None:
                self.log.append("source.stop")

    def emit(self, block: AudioBlock) -> None:
        if self._active and self._queue is not None:
            self._queue.put_nowait(block)

    async def blocks(self) -> AsyncIterator[AudioBlock]:
        queue = self._queue
        if queue is None:
            return
        while True:
            block = await queue.get()
            if block is None or not self._active:
                return
            yield block


class FakeTranscriptionSession:
    def __init__(
        self,
        on_transcript,
        on_error,
        sample_rate: int = SAMPLE_RATE,
        connect_error: Exception | None = None,
        connect_gate: asyncio.Event | None = None,
        close_gate: asyncio.Event | None = None,
        log: list[str] | None = None,
        send_error: Exception | None = None,
    ) -> None:
        self.on_transcript = on_transcript
        self._send_error = send_error
        self.on_error = on_error
        self._sample_rate = sample_rate
        self._connect_error = connect_error
        self._connect_gate = connect_gate
        self._close_gate = close_gate
        self.state = SessionState.IDLE
        self.sent: list[bytes] = []
        self.log = log if log is not None else []
        self.finalize_calls = 0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    async def connect(self) -> None:
        self.log.append("connect")
        self.state = SessionState.CONNECTING
        if self._connect_gate is not None:
            await self._connect_gate.wait()
        if self._connect_error is not None:
            self.state = SessionState.ERRORED
            raise self._connect_error
        if self.state is SessionState.CONNECTING:
            self.state = SessionState.STREAMING

    async def send(self, block: bytes) -> None:
        if self.state is not SessionState.STREAMING:
            return
        if self._send_error is not None:
            raise self._send_error
        self.sent.append(block)
        self.log.append("send")

    async def finalize_and_close(self) -> None:
        self.finalize_calls += 1
        if self.state in (SessionState.FINALIZING, SessionState.CLOSED):
            return
        self.log.append("finalize_and_close")
        if self.state is SessionState.STREAMING:
            self.log.append("Finalize")
        self.state = SessionState.FINALIZING
        if self._close_gate is not None:
            await self._close_gate.wait()
        self.state = SessionState.CLOSED
        self.log.append("close")


class FakeSessionFactory:
    def __init__(self, **session_kwargs) -> None:
        self.sessions: list[FakeTranscriptionSession] = []
        self._session_kwargs = session_kwargs

    def __call__(self, on_transcript, on_error) -> FakeTranscriptionSession:
        session = FakeTranscriptionSession(on_transcript, on_error, **self._session_kwargs)
        self.sessions.append(session)
        return session


_CLOSE = object()


class FakeWebSocket:
    def __init__(self) -> None:
        self._incoming: asyncio.Queue = asyncio.Queue()

    def feed(self, raw: str | bytes) -> None:
        self._incoming.put_nowait(raw)

    def close(self) -> None:
        self._incoming.put_nowait(_CLOSE)

    def fail(self, exc: BaseException) -> None:
        self._incoming.put_nowait(exc)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeDeepgramSocket:
    def __init__(self, log: list[str] | None = None) -> None:
        self._websocket = FakeWebSocket()
        self.media: list[bytes] = []
        self.controls: list[str] = []
        self.fail_media = False
        self.fail_control = False
        self.log = log if log is not None else []

    async def send_media(self, data: bytes) -> None:
        if self.fail_media:
            raise ConnectionError("socket is closed")
        self.media.append(data)
        self.log.append("media")

    async def send_control(self, message) -> None:
        if self.fail_control:
            raise ConnectionError("socket is closed")
        self.controls.append(message.type)
        self.log.append(message.type)


class FakeConnectContext:
    def __init__(self, socket, error: Exception | None = None, gate: asyncio.Event | None = None) -> None:
        self._socket = socket
        self._error = error
        self._gate = gate
        self.entered = False
        self.exited = False

    async def __aenter__(self):
        if self._gate is not None:
            await self._gate.wait()
        if self._error is not None:
            raise self._error
        self.entered = True
        return self._socket

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.exited = True
        self._socket.log.append("close")


class FakeDeepgramClient:
    def __init__(
        self,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
        log: list[str] | None = None,
    ) -> None:
        self._error = error
        self._gate = gate
        self.log = log if log is not None else []
        self.socket = FakeDeepgramSocket(log=self.log)
        self.context: FakeConnectContext | None = None
        self.connect_params: dict | None = None
        self.api_keys: list[str] = []
        self.listen = SimpleNamespace(v1=SimpleNamespace(connect=self._connect))

    def _connect(self, **params) -> FakeConnectContext:
        self.connect_params = params
        self.context = FakeConnectContext(self.socket, error=self._error, gate=self._gate)
        return self.context

    def factory(self, api_key: str) -> "FakeDeepgramClient":
        self.api_keys.append(api_key)
        return self


@pytest.fixture
def fake_source():
    return FakeAudioSource()


@pytest.fixture
def fake_client():
    return FakeDeepgramClient()


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    for key in list(os.environ):
        if key.startswith("PTT_TRANSCRIBE_") or key == "DEEPGRAM_API_KEY":
            monkeypatch.delenv(key)
    monkeypatch.setitem(TranscribeConfig.model_config, "env_file", None)
