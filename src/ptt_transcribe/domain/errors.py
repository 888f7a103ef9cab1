from ptt_transcribe.domain.state import InvalidTransitionError


class TranscribeError(Exception):
    """Base class for errors raised by the capture/transcription pipeline."""


class ConfigurationError(TranscribeError):
    pass


class AudioCaptureError(TranscribeError):
    pass


class MicrophonePermissionError(AudioCaptureError, PermissionError):
    pass


class AudioDeviceError(AudioCaptureError):
    pass


class SessionConnectionError(TranscribeError, ConnectionError):
    pass


class ProtocolParseError(TranscribeError, ValueError):
    pass


__all__ = [
    "TranscribeError",
    "ConfigurationError",
    "AudioCaptureError",
    "MicrophonePermissionError",
    "AudioDeviceError",
    "SessionConnectionError",
    "ProtocolParseError",
    "InvalidTransitionError",
]
