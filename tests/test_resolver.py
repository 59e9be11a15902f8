"""Tests for utterance resolution (gennie/assistant/resolver.py)."""

from __future__ import annotations

from unittest.mock import AsyncMock, Mock

import pytest
from gennie.assistant.actions import ActionResult, VoiceActionContext, VoiceActionEngine
from gennie.assistant.classifier import IntentClassifier
from gennie.assistant.errors import ClassifierFailure, RateLimited
from gennie.assistant.intents import Action
from gennie.assistant.navigation import NavigationTarget
from gennie.assistant.resolver import CLASSIFIER_FALLBACK, IntentResolver

pytestmark = pytest.mark.anyio


@pytest.fixture
def context():
    return VoiceActionContext(user_id="d1", user_name="Dev", role="driver")


@pytest.fixture
def classifier():
    mock = Mock(spec=IntentClassifier)
    mock.classify = AsyncMock(return_value="Hello!")
    return mock


@pytest.fixture
def resolver(classifier):
    return IntentResolver(classifier, VoiceActionEngine(None))


async def test_emergency_navigates_and_strips_token(resolver, classifier, context):
    classifier.classify.return_value = "Activating emergency rescue now! ACTION:EMERGENCY"
    outcome = await resolver.resolve("Take me to emergency SOS", context)
    classifier.classify.assert_awaited_once_with("take me to emergency sos", "driver")
    assert outcome.action == Action("EMERGENCY")
    assert outcome.navigation == NavigationTarget.dashboard_tab("driver", "emergency-rescue")
    assert "ACTION:" not in outcome.text
    assert not outcome.closing


async def test_conversational_reply(resolver, classifier, context):
    outcome = await resolver.resolve("what's your name", context)
    assert outcome.text == "Hello!"
    assert outcome.action is None
    assert outcome.navigation is None


async def test_goodbye_is_closing(resolver, classifier, context):
    classifier.classify.return_value = "Goodbye! Drive safe."
    outcome = await resolver.resolve("goodbye", context)
    assert outcome.closing
    assert outcome.text == "Goodbye! Drive safe."


async def test_unknown_action_keeps_reply_text(resolver, classifier, context):
    classifier.classify.return_value = "Let me check. ACTION:WARP_DRIVE"
    outcome = await resolver.resolve("engage warp", context)
    assert outcome.text == "Let me check."
    assert outcome.action == Action("WARP_DRIVE")
    assert outcome.navigation is None


async def test_refusal_has_no_navigation(resolver, classifier, context):
    classifier.classify.return_value = "Adding it. ACTION:ADD_CHARGER"
    outcome = await resolver.resolve("add a charger", context)
    assert outcome.refused
    assert outcome.navigation is None
    assert outcome.text.startswith("Only hosts can add chargers")


@pytest.mark.parametrize("error", [RateLimited(), ClassifierFailure("down")])
async def test_classifier_errors_use_fallback(resolver, classifier, context, error):
    classifier.classify.side_effect = error
    outcome = await resolver.resolve("bye then", context)
    assert outcome.failed
    assert outcome.text == CLASSIFIER_FALLBACK
    assert outcome.closing


async def test_empty_utterance_skips_classifier(resolver, classifier, context):
    outcome = await resolver.resolve("   ", context)
    assert outcome.text == ""
    classifier.classify.assert_not_called()


async def test_action_result_without_speech_uses_reply(classifier, context):
    actions = Mock(spec=VoiceActionEngine)
    actions.execute = AsyncMock(return_value=ActionResult("", NavigationTarget.route("/profile")))
    resolver = IntentResolver(classifier, actions)
    classifier.classify.return_value = "Opening profile. ACTION:PROFILE"
    outcome = await resolver.resolve("profile", context)
    assert outcome.text == "Opening profile."
    assert outcome.navigation == NavigationTarget.route("/profile")


def test_reset_clears_classifier_history(resolver, classifier):
    resolver.reset()
    classifier.reset.assert_called_once()
