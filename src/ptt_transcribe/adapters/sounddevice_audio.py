import logging
from collections.abc import AsyncIterator

import janus
import numpy as np
import sounddevice as sd

from ptt_transcribe.domain.errors import AudioDeviceError, MicrophonePermissionError
from ptt_transcribe.ports.audio import AudioBlock

logger = logging.getLogger(__name__)

_PERMISSION_MARKERS = ("permission", "denied", "not authorized", "not permitted")


def _capture_error(exc: Exception) -> Exception:
    text = str(exc).lower()
    if any(marker in text for marker in _PERMISSION_MARKERS):
        return MicrophonePermissionError(f"Microphone access was denied: {exc}")
    return AudioDeviceError(f"Could not open input device: {exc}")


def list_input_devices() -> list[tuple[int, str, int]]:
    devices = []
    for i, dev in enumerate(sd.query_devices()):
        if dev["max_input_channels"] > 0:
            devices.append((i, dev["name"], int(dev["default_samplerate"])))
    return devices


class SounddeviceAudioSource:
    """Microphone capture that hands PortAudio buffers to asyncio as AudioBlocks.

    The PortAudio callback thread only pushes into the janus queue; ``blocks()``
    drains it on the event loop. ``stop()`` closes the stream before the queue,
    so once it returns the iterator yields nothing more.
    """

    def __init__(
        self,
        device: str | int | None = None,
        sample_rate: int = 16000,
        block_size: int = 4096,
        max_queued_blocks: int = 32,
    ) -> None:
        if sample_rate <= 0:
            raise ValueError("sample_rate must be > 0")
        if block_size <= 0:
            raise ValueError("block_size must be > 0")
        if max_queued_blocks <= 0:
            raise ValueError("max_queued_blocks must be > 0")
        self._device = device
        self._requested_rate = sample_rate
        self._negotiated_rate = sample_rate
        self._block_size = block_size
        self._max_queued_blocks = max_queued_blocks
        self._stream: sd.InputStream | None = None
        self._queue: janus.Queue[AudioBlock] | None = None
        self._active = False
        self._dropped = 0

    @property
    def sample_rate(self) -> int:
        return self._negotiated_rate if self._active else self._requested_rate

    @property
    def block_size(self) -> int:
        return self._block_size

    @property
    def active(self) -> bool:
        return self._active

    @property
    def dropped_blocks(self) -> int:
        return self._dropped

    async def start(self) -> None:
        if self._stream is not None:
            return

        device = self._resolve_device()
        rate = self._negotiate_sample_rate(device)
        queue: janus.Queue[AudioBlock] = janus.Queue(maxsize=self._max_queued_blocks)

        def audio_callback(indata: np.ndarray, frames: int, time_info, status) -> None:
            if status:
                logger.warning("Audio capture status: %s", status)
            if not self._active or self._queue is not queue:
                return
            block = AudioBlock(samples=indata[:, 0], sample_rate=rate)
            try:
                queue.sync_q.put_nowait(block)
            except janus.SyncQueueFull:
                self._dropped += 1
                logger.warning("Audio queue full, dropped block (%d dropped)", self._dropped)
            except janus.SyncQueueShutDown:
                pass

        stream = None
        self._queue = queue
        self._active = True
        try:
            stream = sd.InputStream(
                device=device,
                samplerate=rate,
                channels=1,
                dtype="float32",
                blocksize=self._block_size,
                callback=audio_callback,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            self._active = False
            self._queue = None
            queue.close()
            if stream is not None:
                stream.close(ignore_errors=True)
            raise _capture_error(exc) from exc

        self._stream = stream
        self._negotiated_rate = rate
        self._dropped = 0
        logger.info(
            "Audio capture started (device=%s, rate=%d, block=%d)",
            device, rate, self._block_size,
        )

    def stop(self) -> None:
        self._active = False
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except sd.PortAudioError as exc:
                logger.warning("Error closing input stream: %s", exc)
            logger.info("Audio capture stopped")
        queue, self._queue = self._queue, None
        if queue is not None:
            queue.close()

    async def blocks(self) -> AsyncIterator[AudioBlock]:
        queue = self._queue
        if queue is None:
            return
        while self._active and self._queue is queue:
            try:
                block = await queue.async_q.get()
            except janus.AsyncQueueShutDown:
                break
            if not self._active or self._queue is not queue:
                break
            yield block

    def _resolve_device(self) -> int | None:
        if self._device is None or self._device == "":
            try:
                sd.query_devices(kind="input")
            except (sd.PortAudioError, ValueError) as exc:
                raise AudioDeviceError("No input device available") from exc
            return None

        try:
            devices = sd.query_devices()
        except (sd.PortAudioError, ValueError) as exc:
            raise AudioDeviceError(f"Could not list audio devices: {exc}") from exc
        index: int | None = None
        if isinstance(self._device, int):
            index = self._device
        else:
            try:
                index = int(self._device)
            except ValueError:
                pass

        if index is not None:
            if 0 <= index < len(devices) and devices[index]["max_input_channels"] > 0:
                return index
            raise AudioDeviceError(f"Device {index} is not an input device")

        for i, dev in enumerate(devices):
            if self._device.lower() in dev["name"].lower() and dev["max_input_channels"] > 0:
                logger.info("Resolved device '%s' -> %d (%s)", self._device, i, dev["name"])
                return i
        raise AudioDeviceError(f"No input device matching '{self._device}'")

    def _negotiate_sample_rate(self, device: int | None) -> int:
        try:
            sd.check_input_settings(
                device=device,
                channels=1,
                dtype="float32",
                samplerate=self._requested_rate,
            )
            return self._requested_rate
        except (sd.PortAudioError, ValueError) as exc:
            try:
                info = sd.query_devices(device, "input")
            except (sd.PortAudioError, ValueError) as query_exc:
                raise _capture_error(query_exc) from query_exc
            native = int(info["default_samplerate"])
            logger.warning(
                "Device rejected %d Hz (%s), using native rate %d Hz",
                self._requested_rate, exc, native,
            )
            return native
