"""Tests for the Gemini intent classifier (gennie/assistant/classifier.py)."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import httpx
import pytest
from gennie.assistant.classifier import (
    DRIVER_CONTEXT,
    HOST_CONTEXT,
    IntentClassifier,
    build_system_prompt,
    role_context,
)
from gennie.assistant.config import ClassifierConfig
from gennie.assistant.errors import ClassifierFailure, RateLimited

pytestmark = pytest.mark.anyio


def gemini_reply(text: str) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


class Recorder:
    """httpx transport handler replaying queued responses and recording requests."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


@pytest.fixture
def config():
    return ClassifierConfig(
        gemini_model="gemini-test",
        gemini_api_key="secret",
        gemini_base_url="https://gemini.test/v1beta/",
        gemini_timeout=5,
    )


def make_classifier(config, recorder, sleep=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return IntentClassifier(
        config,
        action_catalog="ACTION:EMERGENCY - emergency roadside rescue",
        client=client,
        sleep=sleep or AsyncMock(),
    )


class TestRequest:
    async def test_posts_to_generate_content(self, config):
        recorder = Recorder(httpx.Response(200, json=gemini_reply("Hello there!")))
        classifier = make_classifier(config, recorder)
        reply = await classifier.classify("hello", "driver")
        assert reply == "Hello there!"
        request = recorder.requests[0]
        assert str(request.url) == "https://gemini.test/v1beta/models/gemini-test:generateContent"
        assert request.headers["x-goog-api-key"] == "secret"
        body = recorder.body()
        assert body["contents"][-1]["parts"][0]["text"] == f"{DRIVER_CONTEXT}\nUser: hello"
        assert body["generationConfig"] == {"temperature": 0.3, "maxOutputTokens": 150}
        assert "ACTION:EMERGENCY" in body["system_instruction"]["parts"][0]["text"]

    async def test_host_context_line(self, config):
        recorder = Recorder(httpx.Response(200, json=gemini_reply("ok")))
        classifier = make_classifier(config, recorder)
        await classifier.classify("show my chargers", "host")
        assert recorder.body()["contents"][-1]["parts"][0]["text"].startswith(HOST_CONTEXT)

    async def test_missing_key_fails(self, config):
        recorder = Recorder()
        classifier = make_classifier(
            ClassifierConfig("gemini-test", None, "https://gemini.test", 5),
            recorder,
        )
        with pytest.raises(ClassifierFailure):
            await classifier.classify("hello", "driver")
        assert recorder.requests == []


class TestHistory:
    async def test_history_sent_with_next_turn(self, config):
        recorder = Recorder(
            httpx.Response(200, json=gemini_reply("Hi!")),
            httpx.Response(200, json=gemini_reply("Sure. ACTION:EMERGENCY")),
        )
        classifier = make_classifier(config, recorder)
        await classifier.classify("hi", "driver")
        await classifier.classify("help me", "driver")
        contents = recorder.body()["contents"]
        assert [entry["role"] for entry in contents] == ["user", "model", "user"]
        assert contents[0]["parts"][0]["text"] == "hi"
        assert contents[1]["parts"][0]["text"] == "Hi!"

    async def test_history_trimmed_to_limit(self, config):
        recorder = Recorder(*[httpx.Response(200, json=gemini_reply(f"reply {i}")) for i in range(5)])
        classifier = make_classifier(config, recorder)
        for index in range(5):
            await classifier.classify(f"turn {index}", "driver")
        # Four turns (8 entries) were trimmed to the last 6 before the fifth request.
        assert len(recorder.body()["contents"]) == 7
        assert recorder.body()["contents"][0]["parts"][0]["text"] == "turn 1"

    async def test_reset_clears_history(self, config):
        recorder = Recorder(httpx.Response(200, json=gemini_reply("Hi!")))
        classifier = make_classifier(config, recorder)
        await classifier.classify("hi", "driver")
        assert len(classifier.history) == 2
        classifier.reset()
        assert classifier.history == ()


class TestErrors:
    async def test_rate_limit_retries_with_backoff(self, config):
        sleep = AsyncMock()
        recorder = Recorder(
            httpx.Response(429),
            httpx.Response(429, headers={"retry-after": "7"}),
            httpx.Response(200, json=gemini_reply("Finally")),
        )
        classifier = make_classifier(config, recorder, sleep)
        assert await classifier.classify("hello", "driver") == "Finally"
        assert [call.args[0] for call in sleep.await_args_list] == [5.0, 10.0]

    async def test_rate_limit_exhausted(self, config):
        sleep = AsyncMock()
        recorder = Recorder(*[httpx.Response(429) for _ in range(4)])
        classifier = make_classifier(config, recorder, sleep)
        with pytest.raises(RateLimited):
            await classifier.classify("hello", "driver")
        assert len(recorder.requests) == 4
        assert [call.args[0] for call in sleep.await_args_list] == [5.0, 10.0, 15.0]
        assert classifier.history == ()

    async def test_http_error_is_not_retried(self, config):
        sleep = AsyncMock()
        recorder = Recorder(httpx.Response(500))
        classifier = make_classifier(config, recorder, sleep)
        with pytest.raises(ClassifierFailure):
            await classifier.classify("hello", "driver")
        sleep.assert_not_awaited()

    async def test_blocked_prompt(self, config):
        recorder = Recorder(httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}}))
        classifier = make_classifier(config, recorder)
        with pytest.raises(ClassifierFailure, match="SAFETY"):
            await classifier.classify("hello", "driver")

    async def test_transport_error(self, config):
        def boom(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        classifier = IntentClassifier(config, client=httpx.AsyncClient(transport=httpx.MockTransport(boom)))
        with pytest.raises(ClassifierFailure, match="Failed to contact Gemini"):
            await classifier.classify("hello", "driver")


def test_role_context():
    assert role_context("host") == HOST_CONTEXT
    assert role_context("driver") == DRIVER_CONTEXT


def test_custom_prompt_keeps_action_catalog():
    prompt = build_system_prompt("ACTION:PROFILE - open profile", "You are a kiosk helper.")
    assert prompt.startswith("You are a kiosk helper.")
    assert prompt.endswith("ACTION:PROFILE - open profile")
