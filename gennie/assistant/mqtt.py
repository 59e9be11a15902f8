"""MQTT link between the assistant daemon and the kiosk UI.

Handlers registered with :meth:`AssistantMqtt.subscribe` are remembered and
re-subscribed whenever the broker connection comes back. ``<base>/availability``
is retained ``online`` while connected and carries an ``offline`` last will so
the kiosk can hide the assistant button when the daemon goes away.
"""

from __future__ import annotations

import logging
import ssl
import threading
from collections.abc import Callable

import paho.mqtt.client as mqtt

from .config import MqttConfig

ONLINE = "online"
OFFLINE = "offline"


def _tls_options(config: MqttConfig) -> dict[str, object]:
    options: dict[str, object] = {"tls_version": ssl.PROTOCOL_TLS_CLIENT}
    for key, value in (("ca_certs", config.ca_cert), ("certfile", config.cert), ("keyfile", config.key)):
        if value:
            options[key] = value
    return options


class AssistantMqtt:
    def __init__(self, config: MqttConfig, logger: logging.Logger | None = None) -> None:
        self.config = config
        self._logger = logger or logging.getLogger("gennie-assistant.mqtt")
        self._client: mqtt.Client | None = None
        self._lock = threading.Lock()
        self._handlers: dict[str, Callable[[str], None]] = {}

    @property
    def enabled(self) -> bool:
        return bool(self.config.host)

    @property
    def availability_topic(self) -> str:
        return f"{self.config.topic_base.rstrip('/')}/availability"

    def connect(self) -> bool:
        """Start the network loop; returns False when MQTT is off or unreachable."""
        if not self.enabled:
            self._logger.debug("[mqtt] MQTT host not configured; kiosk UI events disabled")
            return False
        with self._lock:
            if self._client is not None:
                return True
            client = mqtt.Client(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                client_id=f"gennie-{self.config.topic_base.strip('/').replace('/', '-')}",
                clean_session=True,
            )
            if self.config.username:
                client.username_pw_set(self.config.username, self.config.password or "")
            if self.config.tls_enabled:
                client.tls_set(**_tls_options(self.config))
            client.will_set(self.availability_topic, OFFLINE, qos=1, retain=True)
            client.on_connect = self._on_connect
            client.on_disconnect = self._on_disconnect
            for topic in self._handlers:
                client.message_callback_add(topic, self._dispatch)
            try:
                client.connect(self.config.host, self.config.port, keepalive=30)
            except OSError as exc:
                self._logger.warning("[mqtt] Unable to reach broker %s:%s: %s", self.config.host, self.config.port, exc)
                return False
            client.loop_start()
            self._client = client
        return True

    def disconnect(self) -> None:
        with self._lock:
            client = self._client
            self._client = None
        if client is None:
            return
        # A clean disconnect does not fire the will.
        client.publish(self.availability_topic, OFFLINE, qos=1, retain=True)
        client.disconnect()
        client.loop_stop()

    def is_connected(self) -> bool:
        client = self._client
        return bool(client and client.is_connected())

    def publish(self, topic: str, payload: str, retain: bool = False, qos: int = 0) -> None:
        client = self._client
        if not client:
            return
        result = client.publish(topic, payload=payload, qos=qos, retain=retain)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            self._logger.debug("[mqtt] Failed to publish to %s (rc=%s)", topic, result.rc)

    def subscribe(self, topic: str, on_message: Callable[[str], None]) -> None:
        """Route decoded payloads on ``topic`` to ``on_message`` (called on paho's thread)."""
        self._handlers[topic] = on_message
        client = self._client
        if client is None:
            return
        client.message_callback_add(topic, self._dispatch)
        if client.is_connected():
            self._subscribe(client, topic)

    def _subscribe(self, client: mqtt.Client, topic: str) -> None:
        result, _mid = client.subscribe(topic, qos=1)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._logger.warning("[mqtt] Failed to subscribe to %s (rc=%s)", topic, result)

    def _on_connect(self, client, _userdata, _flags, reason_code, _properties=None) -> None:  # type: ignore[no-untyped-def]
        if reason_code.is_failure:
            self._logger.warning("[mqtt] Broker refused connection: %s", reason_code)
            return
        self._logger.info("[mqtt] Connected to %s:%s", self.config.host, self.config.port)
        client.publish(self.availability_topic, ONLINE, qos=1, retain=True)
        for topic in list(self._handlers):
            self._subscribe(client, topic)

    def _on_disconnect(self, _client, _userdata, _flags, reason_code, _properties=None) -> None:  # type: ignore[no-untyped-def]
        if reason_code.is_failure:
            self._logger.warning("[mqtt] Lost broker connection (%s); paho will reconnect", reason_code)

    def _dispatch(self, _client, _userdata, message) -> None:  # type: ignore[no-untyped-def]
        handler = self._handlers.get(message.topic)
        if handler is None:
            return
        payload = message.payload.decode("utf-8", errors="replace").strip()
        try:
            handler(payload)
        except Exception:
            self._logger.exception("[mqtt] Handler for %s failed", message.topic)
