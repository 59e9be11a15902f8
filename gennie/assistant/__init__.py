"""
Voice assistant pipeline for the ChargeNet kiosk

This package provides the hands-free conversation loop for Gennie including:

- Wake word detection: on-device classifier trained from the user's own exemplars
- Voice activity detection: energy thresholds with hysteresis and debounce
- Speech recognition: Wyoming protocol (faster-whisper) for local transcription
- Intent classification: Gemini with an ACTION token vocabulary
- Speech synthesis: ElevenLabs with a local Piper fallback
- Navigation: route/tab requests published to the kiosk router over MQTT

Key modules:
- config: Configuration management from environment variables
- controller: Conversation state machine and audio resource arbitration
- wake_word: Enrollment, training and sliding-window inference
- vad: Voice activity detection
- resolver: Classifier call, token extraction and action dispatch
- actions: Action table mapping ACTION tokens to spoken results and navigation
"""

from __future__ import annotations

__all__ = [
    "config",
    "actions",
    "audio",
    "chargenet",
    "classifier",
    "controller",
    "errors",
    "intents",
    "level_monitor",
    "mqtt",
    "mqtt_publisher",
    "navigation",
    "persistence",
    "resolver",
    "resources",
    "session",
    "speech",
    "transcription",
    "vad",
    "wake_model",
    "wake_word",
]
