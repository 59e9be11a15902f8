"""Microphone capture and PCM playback through command-line audio tools."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
from asyncio.subprocess import Process

from .errors import PermissionDenied, PlaybackError

LOGGER = logging.getLogger("gennie-assistant.audio")

_PERMISSION_MARKERS = ("permission denied", "operation not permitted", "access denied")

# sample width -> (ALSA, PipeWire, PulseAudio) format names
_SAMPLE_FORMATS: dict[int, tuple[str, str | None, str]] = {
    1: ("U8", "u8", "u8"),
    2: ("S16_LE", "s16", "s16le"),
    3: ("S24_LE", None, "s24le"),
    4: ("S32_LE", "s32", "s32le"),
}

PLAYERS = ("pw-play", "paplay", "aplay")


def _looks_like_permission_error(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _PERMISSION_MARKERS)


async def _read_stderr(proc: Process, timeout: float | None = None) -> str:
    if proc.stderr is None:
        return ""
    try:
        data = await asyncio.wait_for(proc.stderr.read(), timeout=timeout)
    except (asyncio.TimeoutError, RuntimeError, OSError):
        return ""
    return data.decode("utf-8", errors="ignore").strip()


class MicrophoneStream:
    """The kiosk microphone, read as fixed-size PCM chunks from ``arecord``.

    Only one component reads at a time; :class:`AudioResourceArbiter` decides who.
    A capture process that dies with a permission message raises
    :class:`PermissionDenied` so the UI can tell the user why Gennie is deaf.
    """

    def __init__(self, command: list[str], bytes_per_chunk: int, logger: logging.Logger | None = None) -> None:
        self.command = command
        self.bytes_per_chunk = bytes_per_chunk
        self._proc: Process | None = None
        self._logger = logger or LOGGER

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> None:
        if self.is_running:
            return
        self._logger.debug("Opening microphone: %s", " ".join(self.command))
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except PermissionError as exc:
            raise PermissionDenied(f"Microphone command not permitted: {exc}") from exc

    async def read_chunk(self) -> bytes:
        proc = self._proc
        if proc is None or proc.stdout is None:
            raise RuntimeError("Microphone stream is not running")
        try:
            return await proc.stdout.readexactly(self.bytes_per_chunk)
        except asyncio.IncompleteReadError as exc:
            stderr = await _read_stderr(proc)
            if _looks_like_permission_error(stderr):
                raise PermissionDenied(f"Microphone access denied ({stderr})") from exc
            detail = f" ({stderr})" if stderr else ""
            raise RuntimeError(f"Microphone stream ended unexpectedly{detail}") from exc

    async def read_seconds(self, seconds: float, chunk_ms: int) -> bytes:
        """Read roughly ``seconds`` of audio as whole chunks."""
        count = max(1, round(seconds * 1000 / max(1, chunk_ms)))
        return b"".join([await self.read_chunk() for _ in range(count)])

    async def stop(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None:
            return
        self._logger.debug("Closing microphone")
        for stream in (proc.stdout, proc.stderr):
            if stream is not None:
                stream.feed_eof()
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=2)


def player_command(player: str, rate: int, width: int, channels: int) -> list[str]:
    """Command line that plays raw PCM from stdin.

    Raises ValueError when ``player`` has no sample format for ``width``.
    """
    formats = _SAMPLE_FORMATS.get(width)
    if formats is None:
        raise ValueError(f"Unsupported sample width: {width}")
    alsa, pipewire, pulse = formats
    if player == "pw-play":
        if pipewire is None:
            raise ValueError(f"pw-play cannot play {width * 8}-bit audio")
        return ["pw-play", "--raw", f"--rate={rate}", f"--channels={channels}", f"--format={pipewire}", "-"]
    if player == "paplay":
        return ["paplay", "--raw", f"--rate={rate}", f"--channels={channels}", f"--format={pulse}", "-"]
    return ["aplay", "-q", "-t", "raw", "-f", alsa, "-c", str(channels), "-r", str(rate), "-"]


def _executable(binary: str) -> bool:
    if os.path.isabs(binary):
        return os.access(binary, os.X_OK)
    return shutil.which(binary) is not None


def find_player(preferred: str | None = None, logger: logging.Logger | None = None) -> str:
    """Pick ``preferred`` when installed, else the first available of :data:`PLAYERS`."""
    if preferred:
        if _executable(preferred):
            return preferred
        (logger or LOGGER).warning("Audio player %r not found; auto-detecting", preferred)
    return next((candidate for candidate in PLAYERS if _executable(candidate)), "aplay")


class PcmPlayer:
    """Plays Gennie's replies by piping PCM into ``pw-play``, ``paplay`` or ``aplay``."""

    def __init__(self, preferred: str | None = None, logger: logging.Logger | None = None) -> None:
        self.preferred = preferred
        self._player: str | None = None
        self._proc: Process | None = None
        self._logger = logger or LOGGER

    @property
    def is_active(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def player(self) -> str:
        if self._player is None:
            self._player = find_player(self.preferred, self._logger)
        return self._player

    async def start(self, rate: int, width: int, channels: int) -> None:
        await self.stop()
        player = self.player
        try:
            command = player_command(player, rate, width, channels)
        except ValueError as exc:
            if player == "aplay":
                raise PlaybackError(str(exc)) from exc
            self._logger.warning("%s; using aplay", exc)
            player = "aplay"
            command = player_command(player, rate, width, channels)
        self._logger.debug("Starting playback (%s): %s", player, " ".join(command))
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except PermissionError as exc:
            raise PermissionDenied(f"Audio player not permitted: {exc}") from exc
        except OSError as exc:
            raise PlaybackError(f"Unable to start audio player {player}: {exc}") from exc

    async def write(self, chunk: bytes) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None:
            raise PlaybackError("Playback is not active")
        try:
            proc.stdin.write(chunk)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            stderr = await _read_stderr(proc, timeout=0.05)
            await self.abort()
            detail = f" ({stderr})" if stderr else ""
            raise PlaybackError(f"Audio player exited unexpectedly{detail}") from exc

    async def play(self, audio: bytes, *, rate: int, width: int, channels: int, chunk_size: int = 4096) -> None:
        """Play a complete PCM buffer and wait until the player drains it."""
        await self.start(rate, width, channels)
        try:
            for offset in range(0, len(audio), chunk_size):
                await self.write(audio[offset : offset + chunk_size])
        except BaseException:
            await self.abort()
            raise
        await self.stop()

    async def stop(self) -> None:
        """Close stdin and let the player finish what it already has."""
        proc, self._proc = self._proc, None
        if proc is None:
            return
        if proc.stdin is not None:
            proc.stdin.close()
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                await proc.stdin.wait_closed()
        try:
            await asyncio.wait_for(proc.wait(), timeout=30)
        except asyncio.TimeoutError:
            self._logger.warning("Audio player did not exit; killing it")
            with contextlib.suppress(ProcessLookupError):
                proc.kill()

    async def abort(self) -> None:
        """Stop immediately, discarding anything still buffered."""
        proc, self._proc = self._proc, None
        if proc is None:
            return
        self._logger.debug("Aborting playback")
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=2)
