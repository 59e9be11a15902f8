"""Publishes assistant state and UI events to MQTT topics under the topic base."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any

from .mqtt import AssistantMqtt
from .navigation import NavigationEvent
from .session import Message

LOGGER = logging.getLogger("gennie-assistant.mqtt")


class AssistantMqttPublisher:
    """Topic layout for the kiosk UI.

    ``<base>/state`` and ``<base>/wake_word`` are retained; messages, interim
    transcripts, level samples and navigation events are not.
    """

    def __init__(
        self,
        mqtt: AssistantMqtt,
        topic_base: str,
        *,
        level_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self.mqtt = mqtt
        self.topic_base = topic_base.rstrip("/")
        self.level_interval = level_interval
        self._clock = clock
        self._logger = logger or LOGGER
        self._last_level_at: float | None = None

    def topic(self, suffix: str) -> str:
        return f"{self.topic_base}/{suffix}"

    @property
    def command_topic(self) -> str:
        return self.topic("command")

    def publish_state(self, state: str) -> None:
        self.mqtt.publish(self.topic("state"), state, retain=True, qos=1)

    def publish_wake_state(self, state: str) -> None:
        self.mqtt.publish(self.topic("wake_word"), state, retain=True, qos=1)

    def publish_level(self, volume: float) -> None:
        now = self._clock()
        if self._last_level_at is not None and now - self._last_level_at < self.level_interval:
            return
        self._last_level_at = now
        self.mqtt.publish(self.topic("level"), f"{volume:.1f}")

    def publish_interim(self, text: str) -> None:
        self.mqtt.publish(self.topic("transcript/interim"), text)

    def publish_message(self, message: Message) -> None:
        self._publish_json("messages", message.to_payload())

    def publish_messages_cleared(self) -> None:
        self._publish_json("messages", {"cleared": True})

    def publish_navigation(self, event: NavigationEvent) -> None:
        self._publish_json("navigate", event.to_payload(), qos=1)

    def _publish_json(self, suffix: str, payload: dict[str, Any], *, qos: int = 0) -> None:
        try:
            body = json.dumps(payload)
        except (TypeError, ValueError):
            self._logger.exception("Unable to encode MQTT payload for %s", suffix)
            return
        self.mqtt.publish(self.topic(suffix), body, qos=qos)
