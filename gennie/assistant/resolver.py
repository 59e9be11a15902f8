"""Turn a finished utterance into a spoken reply and an optional navigation."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .actions import VoiceActionContext, VoiceActionEngine
from .classifier import IntentClassifier
from .errors import ClassifierFailure, RateLimited
from .intents import Action, is_closing_phrase, parse_reply
from .navigation import NavigationTarget

LOGGER = logging.getLogger("gennie-assistant.resolver")

CLASSIFIER_FALLBACK = "I'm having trouble connecting right now. Could you try again?"
UNDERSTANDING_FALLBACK = "I'm having trouble understanding. Could you try again?"


@dataclass(frozen=True)
class IntentOutcome:
    text: str
    navigation: NavigationTarget | None = None
    action: Action | None = None
    closing: bool = False
    refused: bool = False
    failed: bool = False


class IntentResolver:
    def __init__(
        self,
        classifier: IntentClassifier,
        actions: VoiceActionEngine,
        logger: logging.Logger | None = None,
    ) -> None:
        self.classifier = classifier
        self.actions = actions
        self._logger = logger or LOGGER

    def reset(self) -> None:
        self.classifier.reset()

    async def resolve(self, utterance: str, context: VoiceActionContext) -> IntentOutcome:
        normalized = " ".join(utterance.lower().split())
        closing = is_closing_phrase(normalized)
        if not normalized:
            return IntentOutcome("", closing=False)
        try:
            raw = await self.classifier.classify(normalized, context.role)
        except RateLimited:
            self._logger.warning("Classifier rate limit persisted; using fallback reply")
            return IntentOutcome(CLASSIFIER_FALLBACK, closing=closing, failed=True)
        except ClassifierFailure as exc:
            self._logger.error("Classifier failed: %s", exc)
            return IntentOutcome(CLASSIFIER_FALLBACK, closing=closing, failed=True)

        parsed = parse_reply(raw)
        action = parsed.action
        if action is None:
            self._logger.debug("Conversational reply (no action)")
            return IntentOutcome(parsed.text, closing=closing)

        result = await self.actions.execute(action, context)
        if result is None:
            return IntentOutcome(parsed.text, action=action, closing=closing)
        self._logger.info(
            "Action %s resolved (navigation=%s, refused=%s)",
            action.name,
            result.navigation.path if result.navigation else None,
            result.refused,
        )
        return IntentOutcome(
            result.spoken or parsed.text,
            navigation=result.navigation,
            action=action,
            closing=closing,
            refused=result.refused,
        )
