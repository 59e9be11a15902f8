"""Speech synthesis (ElevenLabs, local Piper fallback) and playback."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx
from wyoming.audio import AudioChunk, AudioStart, AudioStop
from wyoming.client import AsyncTcpClient
from wyoming.event import Event
from wyoming.tts import Synthesize, SynthesizeVoice

from gennie.utils import await_with_timeout

from .audio import PcmPlayer
from .config import SpeechConfig, WyomingEndpoint
from .errors import PlaybackError

LOGGER = logging.getLogger("gennie-assistant.speech")


@dataclass(frozen=True)
class SynthesizedAudio:
    audio: bytes
    rate: int
    width: int = 2
    channels: int = 1


class ElevenLabsSynthesizer:
    """Text-to-speech through the ElevenLabs REST API, returning raw PCM."""

    def __init__(
        self,
        config: SpeechConfig,
        *,
        client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.elevenlabs_timeout)
        self._logger = logger or LOGGER

    @property
    def enabled(self) -> bool:
        return bool(self.config.elevenlabs_api_key)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def synthesize(self, text: str) -> SynthesizedAudio:
        if not self.config.elevenlabs_api_key:
            raise PlaybackError("ELEVENLABS_API_KEY is not set")
        rate = self.config.sample_rate
        url = f"{self.config.elevenlabs_base_url.rstrip('/')}/text-to-speech/{self.config.elevenlabs_voice_id}"
        payload = {
            "text": text,
            "model_id": self.config.elevenlabs_model,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.75,
                "style": 0.5,
                "use_speaker_boost": True,
            },
        }
        try:
            response = await self._client.post(
                url,
                params={"output_format": f"pcm_{rate}"},
                json=payload,
                headers={"xi-api-key": self.config.elevenlabs_api_key, "Accept": "audio/pcm"},
            )
        except httpx.HTTPError as exc:
            raise PlaybackError(f"Failed to contact ElevenLabs: {exc}") from exc
        if response.status_code >= 400:
            raise PlaybackError(f"ElevenLabs API error: {response.status_code}")
        audio = response.content
        if not audio:
            raise PlaybackError("ElevenLabs returned no audio")
        if len(audio) % 2:
            audio = audio[:-1]
        return SynthesizedAudio(audio=audio, rate=rate)


async def _tts_event_stream(
    text: str,
    *,
    endpoint: WyomingEndpoint,
    voice_name: str | None = None,
    timeout: float | None = None,
) -> AsyncIterator[Event]:
    client = AsyncTcpClient(endpoint.host, endpoint.port)
    await await_with_timeout(client.connect(), timeout)
    voice = SynthesizeVoice(name=voice_name) if voice_name else None
    await await_with_timeout(client.write_event(Synthesize(text=text, voice=voice).event()), timeout)
    try:
        while True:
            event = await await_with_timeout(client.read_event(), timeout)
            if event is None:
                break
            yield event
            if AudioStop.is_type(event.type):
                break
    finally:
        await client.disconnect()


async def play_wyoming_tts(
    text: str,
    *,
    endpoint: WyomingEndpoint,
    sink: PcmPlayer,
    voice_name: str | None = None,
    timeout: float | None = None,
) -> None:
    """Synthesize via a Wyoming TTS service and stream it into the sink."""
    started = False
    try:
        async for event in _tts_event_stream(text, endpoint=endpoint, voice_name=voice_name, timeout=timeout):
            if AudioStart.is_type(event.type):
                audio_start = AudioStart.from_event(event)
                await sink.start(audio_start.rate, audio_start.width, audio_start.channels)
                started = True
            elif AudioChunk.is_type(event.type) and started:
                await sink.write(AudioChunk.from_event(event).audio)
            elif AudioStop.is_type(event.type):
                break
    except BaseException:
        if started:
            await sink.abort()
        raise
    if started:
        await sink.stop()


class Speaker:
    """Speak text to completion, preferring ElevenLabs and falling back to Piper.

    Cancelling ``speak`` aborts playback immediately.
    """

    def __init__(
        self,
        config: SpeechConfig,
        sink: PcmPlayer,
        *,
        synthesizer: ElevenLabsSynthesizer | None = None,
        timeout: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.sink = sink
        self.synthesizer = synthesizer or ElevenLabsSynthesizer(config)
        self.timeout = timeout
        self._logger = logger or LOGGER

    @property
    def is_active(self) -> bool:
        return self.sink.is_active

    async def close(self) -> None:
        await self.synthesizer.close()

    async def speak(self, text: str) -> None:
        text = text.strip()
        if not text:
            return
        synthesized: SynthesizedAudio | None = None
        if self.synthesizer.enabled:
            try:
                synthesized = await self.synthesizer.synthesize(text)
            except PlaybackError as exc:
                self._logger.warning("ElevenLabs synthesis failed (%s); using local voice", exc)
        if synthesized is not None:
            await self.sink.play(
                synthesized.audio,
                rate=synthesized.rate,
                width=synthesized.width,
                channels=synthesized.channels,
            )
            return
        try:
            await play_wyoming_tts(
                text,
                endpoint=self.config.tts_endpoint,
                sink=self.sink,
                voice_name=self.config.tts_voice,
                timeout=self.timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise PlaybackError(f"Local speech synthesis failed: {exc}") from exc

    async def stop(self) -> None:
        await self.sink.abort()
