"""Streaming speech-to-text over the Wyoming protocol."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable
from enum import Enum

from wyoming.asr import Transcribe, Transcript
from wyoming.audio import AudioChunk, AudioStart, AudioStop
from wyoming.client import AsyncTcpClient
from wyoming.error import Error

from gennie.utils import await_with_timeout

from .config import MicConfig, WyomingEndpoint
from .errors import RecognitionTransient, TranscriptionError

LOGGER = logging.getLogger("gennie-assistant.stt")

TRANSCRIPT_CHUNK_TYPE = "transcript-chunk"


class RecognitionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"


class TranscriptionAdapter:
    """One utterance at a time against a Wyoming STT service.

    ``start`` only counts as confirmed once the service accepted the stream;
    a second start while one is requested or confirmed is suppressed. Audio fed
    while the start is still pending is buffered and flushed on confirmation.
    """

    def __init__(
        self,
        endpoint: WyomingEndpoint,
        mic: MicConfig,
        *,
        language: str | None = None,
        timeout: float | None = None,
        on_interim: Callable[[str], None] | None = None,
        client_factory: Callable[[str, int], AsyncTcpClient] = AsyncTcpClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.mic = mic
        self.language = language
        self.timeout = timeout
        self.on_interim = on_interim
        self._client_factory = client_factory
        self._logger = logger or LOGGER
        self._state = RecognitionState.IDLE
        self._generation = 0
        self._client: AsyncTcpClient | None = None
        self._reader: asyncio.Task[None] | None = None
        self._final: asyncio.Future[str] | None = None
        self._pending: list[bytes] = []

    @property
    def state(self) -> RecognitionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is not RecognitionState.IDLE

    async def start(self, preroll: Iterable[bytes] = ()) -> bool:
        if self._state is not RecognitionState.IDLE:
            self._logger.debug("Recognition start suppressed (state=%s)", self._state.value)
            return False
        self._generation += 1
        generation = self._generation
        self._state = RecognitionState.STARTING
        self._pending = list(preroll)
        client = self._client_factory(self.endpoint.host, self.endpoint.port)
        try:
            await await_with_timeout(client.connect(), self.timeout)
            await await_with_timeout(
                client.write_event(Transcribe(name=self.endpoint.model, language=self.language).event()),
                self.timeout,
            )
            await await_with_timeout(
                client.write_event(
                    AudioStart(rate=self.mic.rate, width=self.mic.width, channels=self.mic.channels).event()
                ),
                self.timeout,
            )
        except BaseException as exc:
            with contextlib.suppress(Exception):
                await client.disconnect()
            if generation == self._generation:
                self._state = RecognitionState.IDLE
                self._pending = []
            if isinstance(exc, (OSError, asyncio.TimeoutError)):
                raise TranscriptionError(f"Unable to reach speech recognizer: {exc}") from exc
            raise
        if generation != self._generation or self._state is not RecognitionState.STARTING:
            self._logger.debug("Recognition aborted before confirmation")
            with contextlib.suppress(Exception):
                await client.disconnect()
            return False

        self._client = client
        self._final = asyncio.get_running_loop().create_future()
        self._reader = asyncio.create_task(self._read_events(client, self._final), name="stt-reader")
        self._state = RecognitionState.ACTIVE
        self._logger.debug("Recognition started")
        pending, self._pending = self._pending, []
        for chunk in pending:
            await self._write_chunk(chunk)
        return True

    async def feed(self, chunk: bytes) -> None:
        if self._state is RecognitionState.STARTING:
            self._pending.append(chunk)
            return
        if self._state is not RecognitionState.ACTIVE:
            return
        await self._write_chunk(chunk)

    async def finish(self) -> str:
        """End the audio stream and return the final transcript text."""
        if self._state is not RecognitionState.ACTIVE or self._client is None or self._final is None:
            await self.abort()
            raise RecognitionTransient("Recognition was not active")
        self._state = RecognitionState.STOPPING
        client = self._client
        final = self._final
        try:
            await await_with_timeout(client.write_event(AudioStop().event()), self.timeout)
            text = await await_with_timeout(asyncio.shield(final), self.timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            raise TranscriptionError(f"Speech recognizer failed: {exc}") from exc
        finally:
            await self._teardown()
        if not text:
            raise RecognitionTransient("No speech recognized")
        self._logger.debug("Final transcript: %s", text)
        return text

    async def abort(self) -> None:
        """Drop any in-flight recognition; safe to call in any state."""
        if self._state is RecognitionState.IDLE:
            return
        self._generation += 1
        if self._state is RecognitionState.STARTING:
            self._state = RecognitionState.IDLE
            self._pending = []
            return
        await self._teardown()
        self._logger.debug("Recognition aborted")

    async def _write_chunk(self, chunk: bytes) -> None:
        client = self._client
        if client is None:
            return
        event = AudioChunk(rate=self.mic.rate, width=self.mic.width, channels=self.mic.channels, audio=chunk).event()
        try:
            await await_with_timeout(client.write_event(event), self.timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            await self._teardown()
            raise TranscriptionError(f"Lost connection to speech recognizer: {exc}") from exc

    async def _read_events(self, client: AsyncTcpClient, final: asyncio.Future[str]) -> None:
        try:
            while True:
                event = await client.read_event()
                if event is None:
                    if not final.done():
                        final.set_exception(RecognitionTransient("Recognizer closed the stream"))
                    return
                if Transcript.is_type(event.type):
                    if not final.done():
                        final.set_result((Transcript.from_event(event).text or "").strip())
                    return
                if Error.is_type(event.type):
                    if not final.done():
                        final.set_exception(TranscriptionError(Error.from_event(event).text))
                    return
                if event.type == TRANSCRIPT_CHUNK_TYPE:
                    text = str((event.data or {}).get("text") or "").strip()
                    if text and self.on_interim:
                        self.on_interim(text)
        except asyncio.CancelledError:
            if not final.done():
                final.cancel()
            raise
        except OSError as exc:
            if not final.done():
                final.set_exception(TranscriptionError(f"Speech recognizer connection error: {exc}"))

    async def _teardown(self) -> None:
        reader, self._reader = self._reader, None
        client, self._client = self._client, None
        final, self._final = self._final, None
        self._pending = []
        self._state = RecognitionState.IDLE
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        if final is not None and final.done() and not final.cancelled():
            final.exception()
        if client is not None:
            with contextlib.suppress(Exception):
                await client.disconnect()
