"""Gemini-backed intent classifier with bounded conversation history."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

import httpx

from .config import ClassifierConfig
from .errors import ClassifierFailure, RateLimited

LOGGER = logging.getLogger("gennie-assistant.classifier")

HOST_CONTEXT = "[User is a HOST who owns chargers and can respond to rescue requests.]"
DRIVER_CONTEXT = "[User is a DRIVER who finds chargers, books them, and requests emergency help.]"

BASE_SYSTEM_PROMPT = """You are Gennie, the voice assistant built into the ChargeNet app. You control the app.

When the user wants to go somewhere or see something ("take me to", "open", "show", "go to", \
"navigate to", "switch to"), finish your reply with exactly one matching action code. Never say \
you cannot navigate.

Rules:
- Keep the spoken text to one short sentence and put the action code at the end.
- "emergency", "SOS", "stranded", "dead battery", "rescue" -> ACTION:EMERGENCY
- "bookings", "show bookings" -> ACTION:VIEW_BOOKINGS
- "trip", "route" -> ACTION:PLAN_TRIP, or ACTION:PLAN_TRIP:origin|destination when both are known
- "chargers", "nearby charger", "map" -> ACTION:FIND_CHARGERS
- "make my charger offline" with no name -> ACTION:TOGGLE_CHARGER:all
- Casual chat with no navigation intent gets no action code.

Action codes:
{actions}

Examples:
User: "take me to emergency SOS"
Gennie: "Activating emergency rescue now! ACTION:EMERGENCY"
User: "book charger at Phoenix Mall"
Gennie: "Booking Phoenix Mall charger! ACTION:BOOK_CHARGER:Phoenix Mall"
User: "plan trip from Delhi to Mumbai"
Gennie: "Planning Delhi to Mumbai route! ACTION:PLAN_TRIP:Delhi|Mumbai"
User: "what's your name?"
Gennie: "I'm Gennie, your ChargeNet assistant! How can I help?"
"""


@dataclass(frozen=True)
class HistoryEntry:
    role: Literal["user", "model"]
    text: str

    def to_content(self) -> dict[str, Any]:
        return {"role": self.role, "parts": [{"text": self.text}]}


def role_context(role: str) -> str:
    return HOST_CONTEXT if role == "host" else DRIVER_CONTEXT


def build_system_prompt(action_catalog: str, custom_prompt: str | None = None) -> str:
    if custom_prompt:
        return f"{custom_prompt.strip()}\n\nAction codes:\n{action_catalog}"
    return BASE_SYSTEM_PROMPT.format(actions=action_catalog)


class IntentClassifier:
    """Send utterances to Gemini and keep the last few turns as context."""

    def __init__(
        self,
        config: ClassifierConfig,
        *,
        action_catalog: str = "",
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.system_prompt = build_system_prompt(action_catalog, config.system_prompt)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.gemini_timeout)
        self._sleep = sleep
        self._logger = logger or LOGGER
        self._history: list[HistoryEntry] = []

    @property
    def history(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._history)

    def reset(self) -> None:
        self._history.clear()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def classify(self, utterance: str, role: str) -> str:
        """Return the raw reply text; raises RateLimited once retries run out."""
        limit = self.config.history_limit
        if len(self._history) > limit:
            self._history = self._history[-limit:] if limit else []
        prompt = f"{role_context(role)}\nUser: {utterance}"
        delays = self.config.retry_delays
        attempt = 0
        while True:
            try:
                reply = await self._generate(prompt)
                break
            except RateLimited as exc:
                if attempt >= len(delays):
                    self._logger.error("Classifier still rate limited after %d retries", attempt)
                    raise
                delay = delays[attempt]
                attempt += 1
                self._logger.warning(
                    "Classifier rate limited (retry-after=%s); retrying in %.0fs (%d left)",
                    exc.retry_after,
                    delay,
                    len(delays) - attempt + 1,
                )
                await self._sleep(delay)
        self._history.append(HistoryEntry("user", utterance))
        self._history.append(HistoryEntry("model", reply))
        return reply

    def _build_payload(self, prompt: str) -> dict[str, Any]:
        contents = [entry.to_content() for entry in self._history]
        contents.append({"role": "user", "parts": [{"text": prompt}]})
        return {
            "contents": contents,
            "generationConfig": {
                "temperature": 0.3,
                "maxOutputTokens": 150,
            },
            "system_instruction": {"parts": [{"text": self.system_prompt}]},
        }

    async def _generate(self, prompt: str) -> str:
        api_key = self.config.gemini_api_key
        if not api_key:
            raise ClassifierFailure("GEMINI_API_KEY is not set")
        model = (self.config.gemini_model or "").strip()
        if not model:
            raise ClassifierFailure("GEMINI_MODEL is not set")
        url = f"{self.config.gemini_base_url.rstrip('/')}/models/{model}:generateContent"
        try:
            response = await self._client.post(
                url,
                json=self._build_payload(prompt),
                headers={"x-goog-api-key": api_key},
            )
        except httpx.HTTPError as exc:
            raise ClassifierFailure(f"Failed to contact Gemini: {exc}") from exc
        if response.status_code == 429:
            raise RateLimited("Gemini rate limited", retry_after=_retry_after(response))
        if response.status_code >= 400:
            raise ClassifierFailure(f"Gemini HTTP error: {response.status_code}")
        try:
            parsed = response.json()
        except ValueError as exc:
            raise ClassifierFailure("Gemini returned invalid JSON") from exc
        return _extract_text(parsed)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _extract_text(parsed: Any) -> str:
    if not isinstance(parsed, dict):
        raise ClassifierFailure("Gemini response was not an object")
    for candidate in parsed.get("candidates") or []:
        if not isinstance(candidate, dict):
            continue
        content = candidate.get("content") or {}
        if not isinstance(content, dict):
            continue
        parts = content.get("parts") or []
        if not isinstance(parts, list):
            continue
        texts = [part.get("text") for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)]
        text = "".join(texts).strip()
        if text:
            return text
    prompt_feedback = parsed.get("promptFeedback")
    if isinstance(prompt_feedback, dict) and prompt_feedback.get("blockReason"):
        raise ClassifierFailure(f"Gemini blocked prompt: {prompt_feedback['blockReason']}")
    raise ClassifierFailure("Gemini response missing content")
