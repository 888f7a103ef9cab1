import asyncio
import logging
from collections.abc import Callable

from ptt_transcribe.domain.encoding import encode_linear16, resample_block
from ptt_transcribe.domain.errors import AudioCaptureError, SessionConnectionError
from ptt_transcribe.domain.state import PushToTalkStatus, SessionState
from ptt_transcribe.ports.audio import AudioBlock, AudioSourcePort
from ptt_transcribe.ports.transcriber import (
    ErrorSink,
    SessionFactory,
    TranscriptionSessionPort,
    TranscriptSink,
)

logger = logging.getLogger(__name__)

StatusSink = Callable[[PushToTalkStatus, str], None]

CONNECTION_ERROR_LABEL = "Deepgram connection error"
CONNECTION_ERROR_MESSAGE = "Failed to connect to Deepgram. Check API key and internet."
MICROPHONE_ERROR_LABEL = "Microphone error"
MICROPHONE_ERROR_MESSAGE = (
    "Failed to access microphone. Check permissions and that a recording device is available."
)
SESSION_ERROR_LABEL = "Deepgram error"
STREAMING_ERROR_LABEL = "Audio streaming error"
STREAMING_ERROR_MESSAGE = "Audio streaming to Deepgram stopped unexpectedly. Release and try again."


class PushToTalkCoordinator:
    """Ties an audio source to one transcription session per press.

    ``activate`` opens a session and then starts capture; ``deactivate`` stops
    capture synchronously and tears the session down in the background. The
    next ``activate`` waits for that teardown, so at most one session is ever
    open.
    """

    def __init__(
        self,
        source: AudioSourcePort,
        session_factory: SessionFactory,
        on_transcript: TranscriptSink,
        on_error: ErrorSink,
        on_status: StatusSink | None = None,
        encoder: Callable[[AudioBlock], bytes] = encode_linear16,
    ) -> None:
        self._source = source
        self._session_factory = session_factory
        self._on_transcript = on_transcript
        self._on_error = on_error
        self._on_status = on_status
        self._encoder = encoder

        self._holding = False
        self._status = PushToTalkStatus.IDLE
        self._session: TranscriptionSessionPort | None = None
        self._pump_task: asyncio.Task | None = None
        self._teardown_task: asyncio.Task | None = None
        self._sessions_opened = 0

    @property
    def holding(self) -> bool:
        return self._holding

    @property
    def status(self) -> PushToTalkStatus:
        return self._status

    @property
    def session(self) -> TranscriptionSessionPort | None:
        return self._session

    def snapshot(self) -> dict:
        return {
            "holding": self._holding,
            "status": self._status.name,
            "session": self._session.state.name if self._session else None,
            "sessions_opened": self._sessions_opened,
        }

    async def activate(self) -> None:
        if self._holding:
            return
        self._holding = True

        teardown = self._teardown_task
        if teardown is not None and not teardown.done():
            logger.debug("Waiting for previous session teardown")
            await asyncio.shield(teardown)
        if not self._holding:
            return

        self._report_status(PushToTalkStatus.CONNECTING, "Connecting to Deepgram and microphone...")
        session = self._session_factory(self._on_transcript, self._handle_session_error)
        self._session = session
        self._sessions_opened += 1

        try:
            await session.connect()
        except SessionConnectionError as exc:
            logger.error("Deepgram connection error: %s", exc)
            if self._session is session:
                self._session = None
            if self._holding:
                self._holding = False
                self._report_error(CONNECTION_ERROR_LABEL, CONNECTION_ERROR_MESSAGE)
            return

        if not self._holding or self._session is not session:
            logger.info("Released during connect, session is being torn down")
            return
        if session.state is not SessionState.STREAMING:
            self._holding = False
            self._session = None
            await session.finalize_and_close()
            self._report_error(CONNECTION_ERROR_LABEL, CONNECTION_ERROR_MESSAGE)
            return

        try:
            await self._source.start()
        except AudioCaptureError as exc:
            logger.error("Microphone error: %s", exc)
            self._holding = False
            self._session = None
            await session.finalize_and_close()
            self._report_error(MICROPHONE_ERROR_LABEL, MICROPHONE_ERROR_MESSAGE)
            return

        if not self._holding:
            self._source.stop()
            return

        self._pump_task = asyncio.create_task(self._pump(session))
        self._pump_task.add_done_callback(self._on_pump_done)
        self._report_status(PushToTalkStatus.LISTENING, "Listening - streaming audio to Deepgram.")

    def deactivate(self) -> None:
        if not self._holding:
            return
        self._holding = False

        self._source.stop()
        session, self._session = self._session, None
        pump, self._pump_task = self._pump_task, None
        self._report_status(PushToTalkStatus.IDLE, "Idle")

        if session is not None:
            self._teardown_task = asyncio.create_task(self._teardown(session, pump))

    async def toggle(self) -> None:
        if self._holding:
            self.deactivate()
        else:
            await self.activate()

    async def close(self) -> None:
        self.deactivate()
        teardown = self._teardown_task
        if teardown is not None:
            await asyncio.shield(teardown)

    async def _pump(self, session: TranscriptionSessionPort) -> None:
        async for block in self._source.blocks():
            if block.sample_rate != session.sample_rate:
                block = resample_block(block, session.sample_rate)
            await session.send(self._encoder(block))

    async def _teardown(
        self, session: TranscriptionSessionPort, pump: asyncio.Task | None
    ) -> None:
        try:
            if pump is not None:
                await asyncio.wait({pump})
            await session.finalize_and_close()
        except Exception:
            logger.exception("Session teardown failed")
        finally:
            if self._teardown_task is asyncio.current_task():
                self._teardown_task = None

    def _on_pump_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        logger.error("Audio pump failed: %s", task.exception())
        if task is self._pump_task:
            self._report_error(STREAMING_ERROR_LABEL, STREAMING_ERROR_MESSAGE)

    def _handle_session_error(self, message: str) -> None:
        self._report_error(SESSION_ERROR_LABEL, message)

    def _report_status(self, status: PushToTalkStatus, label: str) -> None:
        self._status = status
        logger.info("Status: %s (%s)", status.name, label)
        if self._on_status is not None:
            self._on_status(status, label)

    def _report_error(self, label: str, message: str) -> None:
        self._report_status(PushToTalkStatus.ERROR, label)
        self._on_error(message)
