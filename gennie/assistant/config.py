"""Configuration helpers for the Gennie voice assistant."""

from __future__ import annotations

import os
import shlex
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from gennie.utils import parse_bool, parse_float, parse_int, split_csv


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


USER_ROLES = {"driver", "host"}
DEFAULT_GREETING = "Hi! I'm Gennie, your ChargeNet assistant. How can I help you?"
DEFAULT_MODEL_DIR = Path("~/.local/share/gennie/wake-word").expanduser()


@dataclass(frozen=True)
class WyomingEndpoint:
    host: str
    port: int
    model: str | None = None


@dataclass(frozen=True)
class MicConfig:
    command: list[str]
    rate: int
    width: int
    channels: int
    chunk_ms: int

    @property
    def bytes_per_chunk(self) -> int:
        samples = int(self.rate * (self.chunk_ms / 1000))
        return samples * self.width * self.channels


@dataclass(frozen=True)
class VadConfig:
    threshold: float = 15.0
    speech_ms: int = 300
    silence_ms: int = 1500
    level_full_scale: int = 3000


@dataclass(frozen=True)
class WakeWordConfig:
    model_dir: Path
    bundled_model: str | None = None
    threshold: float = 0.96
    overlap: float = 0.6
    window_ms: int = 1000
    epochs: int = 50
    min_examples: int = 20
    settle_ms: int = 200
    learning_rate: float = 0.5


@dataclass(frozen=True)
class ClassifierConfig:
    gemini_model: str
    gemini_api_key: str | None
    gemini_base_url: str
    gemini_timeout: int
    history_limit: int = 6
    retry_delays: tuple[float, ...] = (5.0, 10.0, 15.0)
    system_prompt: str | None = None


@dataclass(frozen=True)
class SpeechConfig:
    elevenlabs_api_key: str | None
    elevenlabs_voice_id: str
    elevenlabs_model: str
    elevenlabs_base_url: str
    elevenlabs_timeout: int
    sample_rate: int
    tts_endpoint: WyomingEndpoint
    tts_voice: str | None
    player: str | None = None


@dataclass(frozen=True)
class ChargeNetConfig:
    base_url: str | None
    token: str | None
    user_id: str
    user_name: str
    role: Literal["driver", "host"]
    timeout: float = 10.0


@dataclass(frozen=True)
class MqttConfig:
    host: str | None
    port: int
    username: str | None
    password: str | None
    tls_enabled: bool
    cert: str | None
    key: str | None
    ca_cert: str | None
    topic_base: str


@dataclass(frozen=True)
class ConversationConfig:
    greeting: str = DEFAULT_GREETING
    close_grace_seconds: float = 4.0
    resume_delay_seconds: float = 0.5
    level_publish_interval: float = 0.1


@dataclass(frozen=True)
class AssistantConfig:
    hostname: str
    device_name: str
    language: str | None
    mic: MicConfig
    vad: VadConfig
    wake_word: WakeWordConfig
    stt_endpoint: WyomingEndpoint
    classifier: ClassifierConfig
    speech: SpeechConfig
    chargenet: ChargeNetConfig
    mqtt: MqttConfig
    conversation: ConversationConfig

    @staticmethod
    def from_env(env: dict[str, str] | None = None) -> AssistantConfig:
        source = os.environ if env is None else env
        hostname = source.get("GENNIE_HOSTNAME") or socket.gethostname()
        device_name = source.get("GENNIE_NAME") or hostname.replace("-", " ").title()

        mic_cmd = shlex.split(
            source.get(
                "GENNIE_MIC_CMD",
                "arecord -q -t raw -f S16_LE -c 1 -r 16000 -",
            )
        )
        mic = MicConfig(
            command=mic_cmd,
            rate=parse_int(source.get("GENNIE_MIC_RATE"), 16000),
            width=parse_int(source.get("GENNIE_MIC_WIDTH"), 2, minimum=1, maximum=4),
            channels=parse_int(source.get("GENNIE_MIC_CHANNELS"), 1),
            chunk_ms=parse_int(source.get("GENNIE_MIC_CHUNK_MS"), 30, minimum=10),
        )

        vad = VadConfig(
            threshold=parse_float(source.get("GENNIE_VAD_THRESHOLD"), 15.0, minimum=0.0, maximum=100.0),
            speech_ms=parse_int(source.get("GENNIE_VAD_SPEECH_MS"), 300, minimum=0),
            silence_ms=parse_int(source.get("GENNIE_VAD_SILENCE_MS"), 1500, minimum=0),
            level_full_scale=parse_int(source.get("GENNIE_LEVEL_FULL_SCALE"), 3000, minimum=1),
        )

        model_dir_raw = _strip_or_none(source.get("GENNIE_WAKE_MODEL_DIR"))
        wake_word = WakeWordConfig(
            model_dir=Path(model_dir_raw).expanduser() if model_dir_raw else DEFAULT_MODEL_DIR,
            bundled_model=_load_bundled_model(source.get("GENNIE_WAKE_BUNDLED_MODEL")),
            threshold=parse_float(source.get("GENNIE_WAKE_THRESHOLD"), 0.96, minimum=0.5, maximum=1.0),
            overlap=parse_float(source.get("GENNIE_WAKE_OVERLAP"), 0.6, minimum=0.0, maximum=0.9),
            window_ms=parse_int(source.get("GENNIE_WAKE_WINDOW_MS"), 1000, minimum=200),
            epochs=parse_int(source.get("GENNIE_WAKE_EPOCHS"), 50, minimum=1),
            min_examples=parse_int(source.get("GENNIE_WAKE_MIN_EXAMPLES"), 20, minimum=1),
            settle_ms=parse_int(source.get("GENNIE_WAKE_SETTLE_MS"), 200, minimum=0),
        )

        stt_endpoint = WyomingEndpoint(
            host=source.get("WYOMING_WHISPER_HOST", "127.0.0.1"),
            port=parse_int(source.get("WYOMING_WHISPER_PORT"), 10300),
            model=source.get("GENNIE_STT_MODEL"),
        )
        tts_endpoint = WyomingEndpoint(
            host=source.get("WYOMING_PIPER_HOST", "127.0.0.1"),
            port=parse_int(source.get("WYOMING_PIPER_PORT"), 10200),
            model=None,
        )

        prompt = (source.get("GENNIE_SYSTEM_PROMPT") or "").strip()
        prompt_file = source.get("GENNIE_SYSTEM_PROMPT_FILE")
        if not prompt and prompt_file:
            candidate = Path(prompt_file)
            if candidate.is_file():
                prompt = candidate.read_text(encoding="utf-8").strip()

        retry_source = source.get("GENNIE_CLASSIFIER_RETRY_DELAYS") or "5,10,15"
        retry_delays = tuple(parse_float(item, 0.0, minimum=0.0) for item in split_csv(retry_source))
        classifier = ClassifierConfig(
            gemini_model=source.get("GEMINI_MODEL", "gemini-2.5-flash"),
            gemini_api_key=_strip_or_none(source.get("GEMINI_API_KEY")),
            gemini_base_url=source.get("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"),
            gemini_timeout=parse_int(source.get("GEMINI_TIMEOUT_SECONDS"), 30),
            history_limit=parse_int(source.get("GENNIE_HISTORY_LIMIT"), 6, minimum=0),
            retry_delays=retry_delays,
            system_prompt=prompt or None,
        )

        speech = SpeechConfig(
            elevenlabs_api_key=_strip_or_none(source.get("ELEVENLABS_API_KEY")),
            elevenlabs_voice_id=source.get("ELEVENLABS_VOICE_ID", "EXAVITQu4vr4xnSDxMaL"),
            elevenlabs_model=source.get("ELEVENLABS_MODEL", "eleven_turbo_v2"),
            elevenlabs_base_url=source.get("ELEVENLABS_BASE_URL", "https://api.elevenlabs.io/v1"),
            elevenlabs_timeout=parse_int(source.get("ELEVENLABS_TIMEOUT_SECONDS"), 20),
            sample_rate=parse_int(source.get("ELEVENLABS_SAMPLE_RATE"), 16000),
            tts_endpoint=tts_endpoint,
            tts_voice=_strip_or_none(source.get("GENNIE_TTS_VOICE")),
            player=_strip_or_none(source.get("GENNIE_AUDIO_PLAYER")),
        )

        base_url = _strip_or_none(source.get("CHARGENET_API_BASE_URL"))
        chargenet = ChargeNetConfig(
            base_url=base_url.rstrip("/") if base_url else None,
            token=_strip_or_none(source.get("CHARGENET_API_TOKEN")),
            user_id=(source.get("CHARGENET_USER_ID") or "").strip(),
            user_name=(source.get("CHARGENET_USER_NAME") or "").strip(),
            role=_normalize_choice(source.get("CHARGENET_USER_ROLE"), USER_ROLES, "driver"),
            timeout=parse_float(source.get("CHARGENET_TIMEOUT_SECONDS"), 10.0),
        )

        topic_base = source.get("GENNIE_TOPIC_BASE") or f"gennie/{hostname}/assistant"
        mqtt = MqttConfig(
            host=_strip_or_none(source.get("MQTT_HOST")),
            port=parse_int(source.get("MQTT_PORT"), 1883),
            username=_strip_or_none(source.get("MQTT_USER") or source.get("MQTT_USERNAME")),
            password=_strip_or_none(source.get("MQTT_PASS") or source.get("MQTT_PASSWORD")),
            tls_enabled=parse_bool(source.get("MQTT_TLS_ENABLED"), False),
            cert=_strip_or_none(source.get("MQTT_CERT")),
            key=_strip_or_none(source.get("MQTT_KEY")),
            ca_cert=_strip_or_none(source.get("MQTT_CA_CERT")),
            topic_base=topic_base.rstrip("/"),
        )

        conversation = ConversationConfig(
            greeting=(source.get("GENNIE_GREETING") or "").strip() or DEFAULT_GREETING,
            close_grace_seconds=parse_float(source.get("GENNIE_CLOSE_GRACE_SECONDS"), 4.0, minimum=0.0),
            resume_delay_seconds=parse_float(source.get("GENNIE_RESUME_DELAY_SECONDS"), 0.5, minimum=0.0),
            level_publish_interval=parse_float(source.get("GENNIE_LEVEL_PUBLISH_SECONDS"), 0.1, minimum=0.0),
        )

        return AssistantConfig(
            hostname=hostname,
            device_name=device_name,
            language=source.get("GENNIE_LANGUAGE"),
            mic=mic,
            vad=vad,
            wake_word=wake_word,
            stt_endpoint=stt_endpoint,
            classifier=classifier,
            speech=speech,
            chargenet=chargenet,
            mqtt=mqtt,
            conversation=conversation,
        )


def _load_bundled_model(value: str | None) -> str | None:
    """Accept either inline base64 or a path to a file holding it."""
    stripped = _strip_or_none(value)
    if not stripped:
        return None
    candidate = Path(stripped).expanduser()
    try:
        if candidate.is_file():
            return candidate.read_text(encoding="utf-8").strip() or None
    except OSError:
        return None
    return stripped


def _normalize_choice(value: str | None, allowed: set[str], default: str) -> str:
    if not value:
        return default
    lowered = value.strip().lower()
    if lowered in allowed:
        return lowered
    return default
