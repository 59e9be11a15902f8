"""Tests for the MQTT wrapper and publisher (gennie/assistant/mqtt.py, mqtt_publisher.py)."""

from __future__ import annotations

import json
from dataclasses import replace
from unittest.mock import MagicMock, Mock, patch

import paho.mqtt.client as mqtt
import pytest
from conftest import FakeClock
from gennie.assistant.config import MqttConfig
from gennie.assistant.mqtt import AssistantMqtt
from gennie.assistant.mqtt_publisher import AssistantMqttPublisher
from gennie.assistant.navigation import NavigationEvent
from gennie.assistant.session import Message


@pytest.fixture
def mqtt_config():
    """Basic MQTT configuration for testing."""
    return MqttConfig(
        host="localhost",
        port=1883,
        topic_base="gennie/kiosk/assistant",
        username="user",
        password="pass",
        tls_enabled=False,
        ca_cert=None,
        cert=None,
        key=None,
    )


@pytest.fixture
def mock_mqtt():
    client = Mock(spec=AssistantMqtt)
    client.publish = Mock()
    return client


@pytest.fixture
def clock():
    return FakeClock(10.0)


@pytest.fixture
def publisher(mock_mqtt, clock):
    return AssistantMqttPublisher(mock_mqtt, "gennie/kiosk/assistant/", level_interval=0.1, clock=clock)


# ============================================================================
# AssistantMqtt
# ============================================================================


class TestAssistantMqtt:
    def test_connect_without_host_is_noop(self, mock_logger):
        client = AssistantMqtt(MqttConfig(None, 1883, None, None, False, None, None, None, "t"), mock_logger)
        assert client.connect() is False
        assert not client.enabled
        assert not client.is_connected()
        client.publish("t/state", "closed")

    @patch("gennie.assistant.mqtt.mqtt.Client")
    def test_connect_sets_credentials_and_will(self, mock_client_class, mqtt_config, mock_logger):
        paho = MagicMock()
        mock_client_class.return_value = paho
        client = AssistantMqtt(mqtt_config, mock_logger)
        assert client.connect() is True
        paho.username_pw_set.assert_called_once_with("user", "pass")
        paho.will_set.assert_called_once_with("gennie/kiosk/assistant/availability", "offline", qos=1, retain=True)
        paho.connect.assert_called_once_with("localhost", 1883, keepalive=30)
        paho.loop_start.assert_called_once()
        paho.tls_set.assert_not_called()
        assert mock_client_class.call_args.kwargs["callback_api_version"] == mqtt.CallbackAPIVersion.VERSION2
        assert mock_client_class.call_args.kwargs["client_id"] == "gennie-gennie-kiosk-assistant"

    @patch("gennie.assistant.mqtt.mqtt.Client")
    def test_tls_options_only_include_configured_files(self, mock_client_class, mqtt_config, mock_logger):
        paho = MagicMock()
        mock_client_class.return_value = paho
        config = replace(mqtt_config, tls_enabled=True, ca_cert="/etc/ssl/ca.pem")
        AssistantMqtt(config, mock_logger).connect()
        kwargs = paho.tls_set.call_args.kwargs
        assert kwargs["ca_certs"] == "/etc/ssl/ca.pem"
        assert "certfile" not in kwargs
        assert "keyfile" not in kwargs

    @patch("gennie.assistant.mqtt.mqtt.Client")
    def test_connect_failure_is_logged(self, mock_client_class, mqtt_config, mock_logger):
        paho = MagicMock()
        paho.connect.side_effect = ConnectionRefusedError("refused")
        mock_client_class.return_value = paho
        client = AssistantMqtt(mqtt_config, mock_logger)
        assert client.connect() is False
        mock_logger.warning.assert_called_once()
        assert not client.is_connected()

    @patch("gennie.assistant.mqtt.mqtt.Client")
    def test_on_connect_announces_and_replays_subscriptions(self, mock_client_class, mqtt_config, mock_logger):
        paho = MagicMock()
        paho.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
        mock_client_class.return_value = paho
        client = AssistantMqtt(mqtt_config, mock_logger)
        client.subscribe("gennie/kiosk/assistant/command", lambda payload: None)
        client.connect()
        paho.message_callback_add.assert_called_once()

        on_connect = paho.on_connect
        on_connect(paho, None, None, Mock(is_failure=False), None)
        on_connect(paho, None, None, Mock(is_failure=False), None)

        assert paho.subscribe.call_count == 2
        paho.subscribe.assert_called_with("gennie/kiosk/assistant/command", qos=1)
        paho.publish.assert_called_with("gennie/kiosk/assistant/availability", "online", qos=1, retain=True)

    @patch("gennie.assistant.mqtt.mqtt.Client")
    def test_refused_connection_subscribes_nothing(self, mock_client_class, mqtt_config, mock_logger):
        paho = MagicMock()
        mock_client_class.return_value = paho
        client = AssistantMqtt(mqtt_config, mock_logger)
        client.subscribe("gennie/kiosk/assistant/command", lambda payload: None)
        client.connect()
        paho.on_connect(paho, None, None, Mock(is_failure=True), None)
        paho.subscribe.assert_not_called()
        mock_logger.warning.assert_called_once()

    @patch("gennie.assistant.mqtt.mqtt.Client")
    def test_dispatch_routes_decoded_payload(self, mock_client_class, mqtt_config, mock_logger):
        paho = MagicMock()
        paho.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
        mock_client_class.return_value = paho
        client = AssistantMqtt(mqtt_config, mock_logger)
        client.connect()
        received = []
        client.subscribe("gennie/kiosk/assistant/command", received.append)
        callback = paho.message_callback_add.call_args.args[1]
        callback(paho, None, Mock(payload=b" toggle\n", topic="gennie/kiosk/assistant/command"))
        callback(paho, None, Mock(payload=b"open", topic="gennie/kiosk/assistant/other"))
        assert received == ["toggle"]

    @patch("gennie.assistant.mqtt.mqtt.Client")
    def test_handler_errors_are_logged(self, mock_client_class, mqtt_config, mock_logger):
        paho = MagicMock()
        paho.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
        mock_client_class.return_value = paho
        client = AssistantMqtt(mqtt_config, mock_logger)
        client.connect()

        def broken(payload):
            raise ValueError(payload)

        client.subscribe("t/command", broken)
        callback = paho.message_callback_add.call_args.args[1]
        callback(paho, None, Mock(payload=b"open", topic="t/command"))
        mock_logger.exception.assert_called_once()

    @patch("gennie.assistant.mqtt.mqtt.Client")
    def test_disconnect_marks_offline(self, mock_client_class, mqtt_config, mock_logger):
        paho = MagicMock()
        mock_client_class.return_value = paho
        client = AssistantMqtt(mqtt_config, mock_logger)
        client.connect()
        client.disconnect()
        paho.publish.assert_called_once_with("gennie/kiosk/assistant/availability", "offline", qos=1, retain=True)
        paho.disconnect.assert_called_once()
        paho.loop_stop.assert_called_once()
        client.disconnect()
        paho.disconnect.assert_called_once()


# ============================================================================
# AssistantMqttPublisher
# ============================================================================


class TestPublisher:
    def test_topics(self, publisher):
        assert publisher.topic("state") == "gennie/kiosk/assistant/state"
        assert publisher.command_topic == "gennie/kiosk/assistant/command"

    def test_state_is_retained(self, publisher, mock_mqtt):
        publisher.publish_state("listening")
        mock_mqtt.publish.assert_called_once_with("gennie/kiosk/assistant/state", "listening", retain=True, qos=1)

    def test_wake_state_is_retained(self, publisher, mock_mqtt):
        publisher.publish_wake_state("trained")
        mock_mqtt.publish.assert_called_once_with(
            "gennie/kiosk/assistant/wake_word", "trained", retain=True, qos=1
        )

    def test_level_is_throttled(self, publisher, mock_mqtt, clock):
        publisher.publish_level(10.0)
        clock.advance(0.05)
        publisher.publish_level(20.0)
        clock.advance(0.06)
        publisher.publish_level(30.0)
        payloads = [call.args[1] for call in mock_mqtt.publish.call_args_list]
        assert payloads == ["10.0", "30.0"]

    def test_message_payload(self, publisher, mock_mqtt):
        publisher.publish_message(Message(7, "Hello", "assistant", 1.5))
        topic, body = mock_mqtt.publish.call_args.args
        assert topic == "gennie/kiosk/assistant/messages"
        assert json.loads(body) == {"id": 7, "text": "Hello", "sender": "assistant", "timestamp": 1.5}

    def test_messages_cleared(self, publisher, mock_mqtt):
        publisher.publish_messages_cleared()
        assert json.loads(mock_mqtt.publish.call_args.args[1]) == {"cleared": True}

    def test_navigation(self, publisher, mock_mqtt):
        event = NavigationEvent("tab", "/dashboard/emergency-rescue", "emergency-rescue", "abc", 1.0)
        publisher.publish_navigation(event)
        topic, body = mock_mqtt.publish.call_args.args
        assert topic == "gennie/kiosk/assistant/navigate"
        assert json.loads(body)["nonce"] == "abc"
        assert mock_mqtt.publish.call_args.kwargs == {"qos": 1}

    def test_interim(self, publisher, mock_mqtt):
        publisher.publish_interim("take me")
        mock_mqtt.publish.assert_called_once_with("gennie/kiosk/assistant/transcript/interim", "take me")
