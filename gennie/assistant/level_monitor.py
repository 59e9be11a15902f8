"""Microphone energy sampling."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from gennie.utils import compute_rms

from .audio import MicrophoneStream

LOGGER = logging.getLogger("gennie-assistant.level")


@dataclass(frozen=True)
class LevelSample:
    volume: float
    at: float
    chunk: bytes


def rms_to_level(rms: int, full_scale: int) -> float:
    """Map an RMS value onto 0-100."""
    if full_scale <= 0:
        return 0.0
    return max(0.0, min(100.0, (rms / full_scale) * 100.0))


class AudioLevelMonitor:
    """Lazy, non-restartable stream of volume samples from the microphone.

    The microphone is opened on first iteration and held until the consumer
    stops iterating (or the generator is closed). ``PermissionDenied`` from the
    microphone propagates before any sample is produced.
    """

    def __init__(
        self,
        mic: MicrophoneStream,
        *,
        sample_width: int,
        full_scale: int,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self._mic = mic
        self._sample_width = sample_width
        self._full_scale = full_scale
        self._clock = clock
        self._logger = logger or LOGGER
        self._started = False

    def __aiter__(self) -> AsyncIterator[LevelSample]:
        if self._started:
            raise RuntimeError("AudioLevelMonitor cannot be restarted")
        self._started = True
        return self._samples()

    async def _samples(self) -> AsyncIterator[LevelSample]:
        await self._mic.start()
        self._logger.debug("Level monitor attached to microphone")
        try:
            while True:
                chunk = await self._mic.read_chunk()
                rms = compute_rms(chunk, self._sample_width)
                yield LevelSample(rms_to_level(rms, self._full_scale), self._clock(), chunk)
        finally:
            await self._mic.stop()
            self._logger.debug("Level monitor released microphone")
