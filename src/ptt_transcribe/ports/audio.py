from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

import numpy as np


@dataclass(frozen=True)
class AudioBlock:
    samples: np.ndarray
    sample_rate: int

    def __post_init__(self) -> None:
        samples = np.asarray(self.samples, dtype=np.float32)
        if samples.ndim != 1:
            raise ValueError("AudioBlock samples must be 1-D (mono)")
        if samples is self.samples:
            samples = samples.copy()
        samples.setflags(write=False)
        object.__setattr__(self, "samples", samples)

    def __len__(self) -> int:
        return int(self.samples.shape[0])


class AudioSourcePort(Protocol):
    @property
    def sample_rate(self) -> int: ...
    @property
    def active(self) -> bool: ...
    async def start(self) -> None: ...
    def stop(self) -> None: ...
    def blocks(self) -> AsyncIterator[AudioBlock]: ...
