#!/usr/bin/env python3
"""Gennie voice assistant daemon."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal

from gennie.assistant.actions import VoiceActionContext, VoiceActionEngine
from gennie.assistant.audio import MicrophoneStream, PcmPlayer
from gennie.assistant.chargenet import ChargeNetClient
from gennie.assistant.classifier import IntentClassifier
from gennie.assistant.config import AssistantConfig
from gennie.assistant.controller import ConversationController
from gennie.assistant.mqtt import AssistantMqtt
from gennie.assistant.mqtt_publisher import AssistantMqttPublisher
from gennie.assistant.navigation import Navigator
from gennie.assistant.persistence import BlobStore
from gennie.assistant.resolver import IntentResolver
from gennie.assistant.resources import AudioResourceArbiter
from gennie.assistant.speech import Speaker
from gennie.assistant.transcription import TranscriptionAdapter
from gennie.assistant.wake_word import WakeWordEngine

LOGGER = logging.getLogger("gennie-assistant")


class GennieAssistant:
    """Wires the conversation controller to its collaborators."""

    def __init__(self, config: AssistantConfig) -> None:
        self.config = config
        self.mqtt = AssistantMqtt(config.mqtt, logger=LOGGER)
        self.publisher = AssistantMqttPublisher(
            self.mqtt,
            config.mqtt.topic_base,
            level_interval=config.conversation.level_publish_interval,
        )
        self.arbiter = AudioResourceArbiter()
        self.mic = MicrophoneStream(config.mic.command, config.mic.bytes_per_chunk, LOGGER)
        self.player = PcmPlayer(config.speech.player, logger=LOGGER)
        self.chargenet = ChargeNetClient(config.chargenet) if config.chargenet.base_url else None
        self.actions = VoiceActionEngine(self.chargenet)
        self.classifier = IntentClassifier(config.classifier, action_catalog=self.actions.describe_for_prompt())
        self.wake_word = WakeWordEngine(
            config.wake_word,
            config.mic,
            self.mic,
            BlobStore(config.wake_word.model_dir),
            arbiter=self.arbiter,
        )
        self.speaker = Speaker(config.speech, self.player)
        self.controller = ConversationController(
            config=config,
            mic=self.mic,
            wake_word=self.wake_word,
            transcriber=TranscriptionAdapter(config.stt_endpoint, config.mic, language=config.language),
            resolver=IntentResolver(self.classifier, self.actions),
            speaker=self.speaker,
            navigator=Navigator(),
            arbiter=self.arbiter,
            context=VoiceActionContext(
                user_id=config.chargenet.user_id,
                user_name=config.chargenet.user_name,
                role=config.chargenet.role,
            ),
            publisher=self.publisher,
        )
        self._loop: asyncio.AbstractEventLoop | None = None
        self._command_tasks: set[asyncio.Task[None]] = set()

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self.mqtt.subscribe(self.publisher.command_topic, self._handle_command_message)
        self.mqtt.connect()
        if not self.chargenet:
            LOGGER.warning("CHARGENET_API_BASE_URL not set; data actions will apologise instead")
        await self.controller.start()
        LOGGER.info("Gennie assistant ready (%s, role=%s)", self.config.device_name, self.config.chargenet.role)
        await asyncio.Event().wait()

    def _handle_command_message(self, payload: str) -> None:
        loop = self._loop
        if loop is None:
            return
        loop.call_soon_threadsafe(self._spawn_command, payload)

    def _spawn_command(self, payload: str) -> None:
        task = asyncio.create_task(self.controller.handle_command(payload))
        self._command_tasks.add(task)
        task.add_done_callback(self._command_tasks.discard)

    async def shutdown(self) -> None:
        for task in list(self._command_tasks):
            task.cancel()
        await self.controller.shutdown()
        await self.speaker.close()
        await self.classifier.close()
        if self.chargenet:
            await self.chargenet.close()
        self.mqtt.disconnect()


async def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    config = AssistantConfig.from_env()
    assistant = GennieAssistant(config)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _handle_signal(signum: int) -> None:
        LOGGER.info("Received signal %s, shutting down", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    run_task = asyncio.create_task(assistant.run())
    await stop_event.wait()
    await assistant.shutdown()
    run_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await run_task


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
