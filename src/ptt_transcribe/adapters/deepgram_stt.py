import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from typing import Any

from deepgram import AsyncDeepgramClient
from deepgram.extensions.types.sockets import ListenV1ControlMessage

from ptt_transcribe.domain.errors import (
    ConfigurationError,
    ProtocolParseError,
    SessionConnectionError,
)
from ptt_transcribe.domain.state import SessionState, validate_transition
from ptt_transcribe.ports.transcriber import ErrorSink, TranscriptEvent, TranscriptSink

logger = logging.getLogger(__name__)

RESULTS_MESSAGE_TYPE = "results"
CONNECTION_ERROR_MESSAGE = "Deepgram connection error."


def _default_client_factory(api_key: str) -> AsyncDeepgramClient:
    return AsyncDeepgramClient(api_key=api_key)


def parse_message(raw: str | bytes) -> dict:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolParseError("binary frame is not UTF-8 text") from exc
    try:
        message = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProtocolParseError(f"invalid JSON: {exc.msg}") from exc
    if not isinstance(message, dict):
        raise ProtocolParseError(f"expected a JSON object, got {type(message).__name__}")
    return message


def is_results_message(message: dict) -> bool:
    return str(message.get("type") or "").lower() == RESULTS_MESSAGE_TYPE


def extract_transcript(message: dict) -> TranscriptEvent | None:
    if not is_results_message(message):
        return None
    channel = message.get("channel")
    if not isinstance(channel, dict):
        return None
    alternatives = channel.get("alternatives")
    if not isinstance(alternatives, list) or not alternatives:
        return None
    first = alternatives[0]
    if not isinstance(first, dict):
        return None
    transcript = first.get("transcript")
    if not isinstance(transcript, str) or not transcript.strip():
        return None
    return TranscriptEvent(
        text=transcript,
        is_final=bool(message.get("is_final") or message.get("speech_final")),
        from_finalize=bool(message.get("from_finalize")),
    )


class DeepgramTranscriptionSession:
    """One streaming session against Deepgram's /v1/listen endpoint.

    A session is single use: IDLE -> CONNECTING -> STREAMING -> FINALIZING -> CLOSED,
    with ERRORED reachable from CONNECTING and STREAMING. Inbound frames are read
    from the socket by a background task and never propagate errors to callers.
    """

    def __init__(
        self,
        api_key: str,
        on_transcript: TranscriptSink,
        on_error: ErrorSink,
        sample_rate: int = 16000,
        language: str = "en-US",
        model: str = "nova-3",
        connect_timeout_s: float = 10.0,
        finalize_grace_s: float = 0.5,
        client_factory: Callable[[str], Any] | None = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError("Deepgram API key is not configured")
        if sample_rate <= 0:
            raise ConfigurationError("sample_rate must be > 0")
        self._api_key = api_key
        self._on_transcript = on_transcript
        self._on_error = on_error
        self._sample_rate = sample_rate
        self._language = language
        self._model = model
        self._connect_timeout_s = connect_timeout_s
        self._finalize_grace_s = finalize_grace_s
        self._client_factory = client_factory or _default_client_factory

        self._state = SessionState.IDLE
        self._context_manager = None
        self._socket = None
        self._handshake: asyncio.Task | None = None
        self._listener_task: asyncio.Task | None = None
        self._closing: asyncio.Task | None = None
        self._flushed = asyncio.Event()
        self._chunks_sent = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    def _transition_to(self, target: SessionState) -> None:
        validate_transition(self._state, target)
        logger.info("State: %s -> %s", self._state.name, target.name)
        self._state = target

    def connection_params(self) -> dict[str, str]:
        return {
            "model": self._model,
            "language": self._language,
            "encoding": "linear16",
            "sample_rate": str(self._sample_rate),
            "channels": "1",
            "punctuate": "true",
            "interim_results": "true",
        }

    async def connect(self) -> None:
        if self._state in (SessionState.CONNECTING, SessionState.STREAMING):
            if self._handshake is not None:
                await asyncio.shield(self._handshake)
            return

        self._transition_to(SessionState.CONNECTING)
        self._handshake = asyncio.create_task(self._open())
        await asyncio.shield(self._handshake)

    async def _open(self) -> None:
        params = self.connection_params()
        logger.info(
            "Connecting to Deepgram (model=%s, language=%s, sample_rate=%s)",
            params["model"], params["language"], params["sample_rate"],
        )
        try:
            client = self._client_factory(self._api_key)
            context_manager = client.listen.v1.connect(**params)
            socket = await asyncio.wait_for(
                context_manager.__aenter__(), timeout=self._connect_timeout_s
            )
        except Exception as exc:
            logger.error("Deepgram handshake failed: %s", exc)
            if self._state is SessionState.CONNECTING:
                self._transition_to(SessionState.ERRORED)
            raise SessionConnectionError("Failed to connect to Deepgram") from exc

        self._context_manager = context_manager
        self._socket = socket
        if self._state is not SessionState.CONNECTING:
            logger.info("Deepgram handshake finished after close was requested")
            return

        self._listener_task = asyncio.create_task(self._receive_loop(socket))
        self._transition_to(SessionState.STREAMING)

    async def send(self, block: bytes) -> None:
        if self._state is not SessionState.STREAMING or self._socket is None:
            return
        try:
            await self._socket.send_media(block)
        except Exception as exc:
            logger.warning("Failed to send audio to Deepgram: %s", exc)
            return
        self._chunks_sent += 1
        if self._chunks_sent == 1:
            logger.info("First audio chunk sent to Deepgram (%d bytes)", len(block))
        elif self._chunks_sent % 50 == 0:
            logger.debug("Audio chunks sent: %d", self._chunks_sent)

    async def finalize_and_close(self) -> None:
        if self._closing is None:
            self._closing = asyncio.create_task(self._finalize_and_close())
        await asyncio.shield(self._closing)

    async def _finalize_and_close(self) -> None:
        state = self._state
        if state is SessionState.IDLE:
            self._transition_to(SessionState.CLOSED)
            return

        if state is SessionState.CONNECTING:
            self._transition_to(SessionState.FINALIZING)
            if self._handshake is not None:
                await asyncio.wait({self._handshake})
        elif state is SessionState.STREAMING:
            self._transition_to(SessionState.FINALIZING)
            await self._send_finalize()
            await self._await_flush()

        await self._release_transport()
        if self._state is not SessionState.CLOSED:
            self._transition_to(SessionState.CLOSED)
        logger.info("Deepgram session closed (%d chunks sent)", self._chunks_sent)

    async def _send_finalize(self) -> None:
        if self._socket is None:
            return
        try:
            await self._socket.send_control(ListenV1ControlMessage(type="Finalize"))
            logger.info("Finalize message sent to Deepgram")
        except Exception as exc:
            logger.warning("Failed to send Finalize: %s", exc)

    async def _await_flush(self) -> None:
        if self._finalize_grace_s <= 0 or self._state is not SessionState.FINALIZING:
            return
        try:
            await asyncio.wait_for(self._flushed.wait(), timeout=self._finalize_grace_s)
        except asyncio.TimeoutError:
            logger.debug("No flushed result within %.2fs, closing anyway", self._finalize_grace_s)

    async def _release_transport(self) -> None:
        listener = self._listener_task
        self._listener_task = None
        if listener is not None and not listener.done():
            listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await listener

        context_manager = self._context_manager
        self._context_manager = None
        self._socket = None
        if context_manager is not None:
            try:
                await context_manager.__aexit__(None, None, None)
            except Exception as exc:
                logger.debug("Error while closing Deepgram socket: %s", exc)

    async def _receive_loop(self, socket: Any) -> None:
        try:
            async for raw in socket._websocket:
                self._handle_message(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._handle_transport_error(exc)
        self._handle_transport_closed()

    def _handle_message(self, raw: str | bytes) -> None:
        try:
            message = parse_message(raw)
        except ProtocolParseError as exc:
            logger.warning("Dropping malformed Deepgram message: %s", exc)
            return

        if is_results_message(message) and message.get("from_finalize"):
            self._flushed.set()

        event = extract_transcript(message)
        if event is None:
            logger.debug("Ignoring Deepgram message type=%s", message.get("type"))
            return

        logger.info(
            "Transcript: %s",
            event.text if event.is_final else f"{event.text} (interim)",
        )
        try:
            self._on_transcript(event.text)
        except Exception:
            logger.exception("Transcript sink raised")

    def _handle_transport_error(self, exc: Exception) -> None:
        logger.error("Deepgram transport error: %s", exc)
        try:
            self._on_error(CONNECTION_ERROR_MESSAGE)
        except Exception:
            logger.exception("Error sink raised")
        if self._state is SessionState.STREAMING:
            self._transition_to(SessionState.ERRORED)

    def _handle_transport_closed(self) -> None:
        self._flushed.set()
        if self._state is SessionState.CLOSED:
            return
        logger.info("Deepgram socket closed by remote")
        self._transition_to(SessionState.CLOSED)
