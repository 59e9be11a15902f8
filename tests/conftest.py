"""Shared test fixtures for the Gennie assistant test suite.

This module provides reusable fixtures for common test scenarios including:
- Microphone fakes that replay scripted PCM chunks
- Configuration objects
- Audio helpers for generating loud and quiet chunks
"""

from __future__ import annotations

import asyncio
import logging
from array import array
from pathlib import Path
from unittest.mock import Mock

import pytest
from gennie.assistant.config import (
    AssistantConfig,
    ChargeNetConfig,
    ClassifierConfig,
    ConversationConfig,
    MicConfig,
    MqttConfig,
    SpeechConfig,
    VadConfig,
    WakeWordConfig,
    WyomingEndpoint,
)

# ============================================================================
# Pytest Configuration
# ============================================================================


@pytest.fixture(scope="session")
def anyio_backend():
    """Configure anyio backend for async tests."""
    return "asyncio"


@pytest.fixture
def mock_logger():
    """Mock logger restricted to the logging.Logger API."""
    return Mock(spec=logging.Logger)


# ============================================================================
# Audio helpers
# ============================================================================


def pcm_tone(samples: int, amplitude: int) -> bytes:
    """Square wave of the given amplitude as 16-bit little-endian PCM."""
    data = array("h", [amplitude if (i // 8) % 2 == 0 else -amplitude for i in range(samples)])
    return data.tobytes()


class FakeMic:
    """Stand-in for MicrophoneStream that replays chunks from a queue.

    When the queue is empty ``read_chunk`` returns silence after a short sleep
    so loops keep yielding control to the event loop.
    """

    def __init__(self, bytes_per_chunk: int = 960, chunks: list[bytes] | None = None) -> None:
        self.bytes_per_chunk = bytes_per_chunk
        self.queue: asyncio.Queue[bytes | Exception] = asyncio.Queue()
        for chunk in chunks or []:
            self.queue.put_nowait(chunk)
        self.running = False
        self.starts = 0
        self.stops = 0
        self.start_error: Exception | None = None

    @property
    def is_running(self) -> bool:
        return self.running

    def push(self, *chunks: bytes | Exception) -> None:
        for chunk in chunks:
            self.queue.put_nowait(chunk)

    async def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.running = True
        self.starts += 1

    async def stop(self) -> None:
        if self.running:
            self.stops += 1
        self.running = False

    async def read_chunk(self) -> bytes:
        if not self.running:
            raise RuntimeError("Microphone stream is not running")
        try:
            item = self.queue.get_nowait()
        except asyncio.QueueEmpty:
            await asyncio.sleep(0.001)
            return b"\x00" * self.bytes_per_chunk
        if isinstance(item, Exception):
            raise item
        return item

    async def read_seconds(self, seconds: float, chunk_ms: int) -> bytes:
        chunks = max(1, int(round((seconds * 1000) / max(1, chunk_ms))))
        buffer = bytearray()
        for _ in range(chunks):
            buffer.extend(await self.read_chunk())
        return bytes(buffer)


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def mic_config():
    """Standard 16kHz mono mic configuration with 30 ms chunks."""
    return MicConfig(command=["arecord"], rate=16000, width=2, channels=1, chunk_ms=30)


@pytest.fixture
def fake_mic(mic_config):
    return FakeMic(mic_config.bytes_per_chunk)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def wake_config(tmp_path: Path):
    """Small wake word config so tests train quickly."""
    return WakeWordConfig(
        model_dir=tmp_path / "wake",
        threshold=0.96,
        overlap=0.6,
        window_ms=300,
        epochs=30,
        min_examples=3,
        settle_ms=0,
    )


@pytest.fixture
def assistant_config(tmp_path: Path, mic_config, wake_config):
    """Full assistant configuration with short conversation timings."""
    return AssistantConfig(
        hostname="kiosk",
        device_name="Kiosk",
        language="en",
        mic=mic_config,
        vad=VadConfig(),
        wake_word=wake_config,
        stt_endpoint=WyomingEndpoint(host="localhost", port=10300),
        classifier=ClassifierConfig(
            gemini_model="gemini-test",
            gemini_api_key="test-key",
            gemini_base_url="https://gemini.test/v1beta",
            gemini_timeout=5,
        ),
        speech=SpeechConfig(
            elevenlabs_api_key=None,
            elevenlabs_voice_id="voice",
            elevenlabs_model="eleven_turbo_v2",
            elevenlabs_base_url="https://elevenlabs.test/v1",
            elevenlabs_timeout=5,
            sample_rate=16000,
            tts_endpoint=WyomingEndpoint(host="localhost", port=10200),
            tts_voice=None,
        ),
        chargenet=ChargeNetConfig(
            base_url="https://chargenet.test",
            token="token",
            user_id="u1",
            user_name="Asha",
            role="driver",
        ),
        mqtt=MqttConfig(
            host=None,
            port=1883,
            username=None,
            password=None,
            tls_enabled=False,
            cert=None,
            key=None,
            ca_cert=None,
            topic_base="gennie/kiosk/assistant",
        ),
        conversation=ConversationConfig(close_grace_seconds=0.0, resume_delay_seconds=0.0),
    )
