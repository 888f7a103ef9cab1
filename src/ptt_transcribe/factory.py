import logging

from ptt_transcribe.adapters.deepgram_stt import DeepgramTranscriptionSession
from ptt_transcribe.adapters.sounddevice_audio import SounddeviceAudioSource
from ptt_transcribe.config import TranscribeConfig
from ptt_transcribe.domain.errors import ConfigurationError
from ptt_transcribe.domain.push_to_talk import PushToTalkCoordinator, StatusSink
from ptt_transcribe.ports.transcriber import ErrorSink, SessionFactory, TranscriptSink

logger = logging.getLogger(__name__)


def create_source(config: TranscribeConfig) -> SounddeviceAudioSource:
    return SounddeviceAudioSource(
        device=config.capture_device or None,
        sample_rate=config.sample_rate,
        block_size=config.block_size,
        max_queued_blocks=config.max_queued_blocks,
    )


def create_session_factory(config: TranscribeConfig, api_key: str) -> SessionFactory:
    if not api_key:
        raise ConfigurationError(
            "Deepgram key not configured. Set PTT_TRANSCRIBE_DEEPGRAM_API_KEY or "
            "PTT_TRANSCRIBE_DEEPGRAM_API_KEY_FILE."
        )

    def session_factory(on_transcript: TranscriptSink, on_error: ErrorSink) -> DeepgramTranscriptionSession:
        return DeepgramTranscriptionSession(
            api_key=api_key,
            on_transcript=on_transcript,
            on_error=on_error,
            sample_rate=config.sample_rate,
            language=config.language,
            model=config.deepgram_model,
            connect_timeout_s=config.connect_timeout_seconds,
            finalize_grace_s=config.finalize_grace_seconds,
        )

    return session_factory


def create_coordinator(
    config: TranscribeConfig,
    on_transcript: TranscriptSink,
    on_error: ErrorSink,
    on_status: StatusSink | None = None,
) -> PushToTalkCoordinator:
    session_factory = create_session_factory(config, config.resolve_api_key())
    return PushToTalkCoordinator(
        source=create_source(config),
        session_factory=session_factory,
        on_transcript=on_transcript,
        on_error=on_error,
        on_status=on_status,
    )
