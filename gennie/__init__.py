"""
Gennie - hands-free voice control for the ChargeNet kiosk

This is the root package for the Gennie assistant, containing shared utilities
and the voice pipeline that lets drivers and hosts operate ChargeNet by voice.

Core modules:
- utils: Environment parsing, async helpers, byte chunking
- assistant: Wake word, voice activity detection, transcription, intent
  resolution and the conversation state machine
"""

__version__ = "0.4.2"
