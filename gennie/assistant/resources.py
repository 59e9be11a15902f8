"""Exclusive ownership of the microphone/speaker pair."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator

from .errors import AudioResourceBusy

LOGGER = logging.getLogger("gennie-assistant.resources")

WAKE_WORD = "wake_word"
CAPTURE = "capture"
PLAYBACK = "playback"
AUDIO_OWNERS = (WAKE_WORD, CAPTURE, PLAYBACK)


class AudioResourceArbiter:
    """Tracks which single subsystem currently owns the audio devices.

    Ownership is never queued: a request while another owner holds the devices
    fails immediately so callers can release in the right order first.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._owner: str | None = None
        self._logger = logger or LOGGER

    @property
    def owner(self) -> str | None:
        return self._owner

    def is_held_by(self, owner: str) -> bool:
        return self._owner == owner

    def acquire(self, owner: str) -> None:
        if owner not in AUDIO_OWNERS:
            raise ValueError(f"Unknown audio owner: {owner}")
        current = self._owner
        if current is not None and current != owner:
            raise AudioResourceBusy(owner, current)
        if current is None:
            self._logger.debug("Audio devices acquired by %s", owner)
        self._owner = owner

    def release(self, owner: str) -> None:
        if self._owner != owner:
            return
        self._logger.debug("Audio devices released by %s", owner)
        self._owner = None

    @contextlib.asynccontextmanager
    async def hold(self, owner: str) -> AsyncIterator[None]:
        """Hold the devices for the duration of the block; always released."""
        self.acquire(owner)
        try:
            yield
        finally:
            self.release(owner)
