"""Energy-based voice activity detection."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterable, Callable
from enum import Enum

from .config import VadConfig
from .level_monitor import LevelSample

LOGGER = logging.getLogger("gennie-assistant.vad")


class VadEvent(str, Enum):
    SPEECH_START = "speech-start"
    SPEECH_END = "speech-end"


class VoiceActivityDetector:
    """Hysteresis over volume samples with separate speech and silence debounce.

    A loud sample clears the silence candidate and a quiet sample clears the
    speech candidate; neither touches the timer that is currently accumulating.
    """

    def __init__(
        self,
        config: VadConfig | None = None,
        *,
        on_speech_start: Callable[[], None] | None = None,
        on_speech_end: Callable[[], None] | None = None,
        on_volume: Callable[[float], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config or VadConfig()
        self.on_speech_start = on_speech_start
        self.on_speech_end = on_speech_end
        self.on_volume = on_volume
        self._clock = clock
        self._logger = logger or LOGGER
        self._speaking = False
        self._speech_candidate_since: float | None = None
        self._silence_candidate_since: float | None = None

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    def reset(self) -> None:
        self._speaking = False
        self._speech_candidate_since = None
        self._silence_candidate_since = None

    def process(self, volume: float, now: float | None = None) -> VadEvent | None:
        """Feed one volume sample (0-100); ``now`` is in seconds."""
        if now is None:
            now = self._clock()
        if self.on_volume:
            self.on_volume(volume)

        event: VadEvent | None = None
        if volume > self.config.threshold:
            self._silence_candidate_since = None
            if not self._speaking:
                if self._speech_candidate_since is None:
                    self._speech_candidate_since = now
                elif (now - self._speech_candidate_since) * 1000 >= self.config.speech_ms:
                    self._speaking = True
                    self._speech_candidate_since = None
                    event = VadEvent.SPEECH_START
        else:
            self._speech_candidate_since = None
            if self._speaking:
                if self._silence_candidate_since is None:
                    self._silence_candidate_since = now
                elif (now - self._silence_candidate_since) * 1000 >= self.config.silence_ms:
                    self._speaking = False
                    self._silence_candidate_since = None
                    event = VadEvent.SPEECH_END

        if event is VadEvent.SPEECH_START:
            self._logger.debug("Speech started (volume=%.1f)", volume)
            if self.on_speech_start:
                self.on_speech_start()
        elif event is VadEvent.SPEECH_END:
            self._logger.debug("Speech ended")
            if self.on_speech_end:
                self.on_speech_end()
        return event

    async def run(self, samples: AsyncIterable[LevelSample]) -> None:
        """Consume a level stream until it ends or the task is cancelled."""
        async for sample in samples:
            self.process(sample.volume, sample.at)
