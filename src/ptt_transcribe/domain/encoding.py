import math

import numpy as np

from ptt_transcribe.ports.audio import AudioBlock

NEGATIVE_SCALE = 32768.0
POSITIVE_SCALE = 32767.0


def encode_linear16(block: AudioBlock) -> bytes:
    """Convert a float block to little-endian signed 16-bit PCM.

    Samples are clamped to [-1, 1]; negative values scale by 32768 and
    non-negative values by 32767 so both ends of the int16 range are reachable.
    NaN becomes silence.
    """
    samples = np.asarray(block.samples, dtype=np.float32)
    if samples.ndim != 1:
        raise ValueError("samples must be 1-D (mono)")
    if samples.size == 0:
        return b""

    clean = np.nan_to_num(samples, nan=0.0, posinf=1.0, neginf=-1.0)
    clipped = np.clip(clean.astype(np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * NEGATIVE_SCALE, clipped * POSITIVE_SCALE)
    return np.trunc(scaled).astype("<i2").tobytes()


def decode_linear16(data: bytes) -> np.ndarray:
    if len(data) % 2:
        raise ValueError("linear16 data must have an even number of bytes")
    ints = np.frombuffer(data, dtype="<i2").astype(np.float32)
    return np.where(ints < 0, ints / NEGATIVE_SCALE, ints / POSITIVE_SCALE).astype(np.float32)


def resample_block(block: AudioBlock, target_rate: int) -> AudioBlock:
    if target_rate <= 0:
        raise ValueError("target_rate must be > 0")
    if block.sample_rate == target_rate or len(block) == 0:
        return AudioBlock(samples=block.samples, sample_rate=target_rate)

    src_len = len(block)
    dst_len = max(int(math.floor(src_len * target_rate / block.sample_rate)), 1)
    x_old = np.arange(src_len, dtype=np.float64)
    x_new = np.linspace(0.0, src_len - 1, num=dst_len, dtype=np.float64)
    samples = np.interp(x_new, x_old, block.samples).astype(np.float32)
    return AudioBlock(samples=samples, sample_rate=target_rate)
