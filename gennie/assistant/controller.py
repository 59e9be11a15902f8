"""
Conversation state machine for Gennie

The controller owns one session at a time and moves it through:

    CLOSED -> OPENING -> LISTENING <-> THINKING -> SPEAKING -> LISTENING ... -> CLOSING -> CLOSED

Audio ownership follows the state:
- CLOSED: the wake word engine holds the microphone
- LISTENING/THINKING: the capture pipeline (level monitor, VAD, transcription)
- SPEAKING: playback only; capture is stopped before the first sample plays

Utterances are handled one at a time. Speech that starts while a turn is being
resolved or spoken is ignored rather than queued.
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from .errors import (
    AssistantError,
    AudioResourceBusy,
    PermissionDenied,
    PlaybackError,
    RecognitionTransient,
    TranscriptionError,
)
from .level_monitor import AudioLevelMonitor
from .resolver import UNDERSTANDING_FALLBACK, IntentOutcome
from .resources import CAPTURE, PLAYBACK
from .session import Message, Sender, Session, SessionState
from .vad import VadEvent, VoiceActivityDetector

if TYPE_CHECKING:
    from .actions import VoiceActionContext
    from .audio import MicrophoneStream
    from .config import AssistantConfig
    from .mqtt_publisher import AssistantMqttPublisher
    from .navigation import NavigationTarget, Navigator
    from .resolver import IntentResolver
    from .resources import AudioResourceArbiter
    from .speech import Speaker
    from .transcription import TranscriptionAdapter
    from .wake_word import WakeWordEngine

LOGGER = logging.getLogger("gennie-assistant.controller")

PREROLL_MS = 450
CAPTURE_RETRY_LIMIT = 3
COMMANDS = {"open", "close", "toggle"}


class ConversationController:
    """Drives one conversation session at a time."""

    def __init__(
        self,
        *,
        config: AssistantConfig,
        mic: MicrophoneStream,
        wake_word: WakeWordEngine,
        transcriber: TranscriptionAdapter,
        resolver: IntentResolver,
        speaker: Speaker,
        navigator: Navigator,
        arbiter: AudioResourceArbiter,
        context: VoiceActionContext,
        publisher: AssistantMqttPublisher | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.mic = mic
        self.wake_word = wake_word
        self.transcriber = transcriber
        self.resolver = resolver
        self.speaker = speaker
        self.navigator = navigator
        self.arbiter = arbiter
        self.context = context
        self.publisher = publisher
        self._clock = clock
        self._logger = logger or LOGGER
        self.vad = VoiceActivityDetector(config.vad, clock=clock, logger=logging.getLogger("gennie-assistant.vad"))
        self._session: Session | None = None
        self._capture_task: asyncio.Task[None] | None = None
        self._turn_task: asyncio.Task[None] | None = None
        self._open_task: asyncio.Task[bool] | None = None
        self._close_task: asyncio.Task[None] | None = None
        self._recovery_task: asyncio.Task[None] | None = None
        self._capture_failures = 0
        self.capture_retry_delay = 0.5
        preroll_chunks = max(1, PREROLL_MS // max(1, config.mic.chunk_ms))
        self._preroll: collections.deque[bytes] = collections.deque(maxlen=preroll_chunks)
        self.transcriber.on_interim = self._on_interim
        self.wake_word.on_error = self._on_wake_error

    # ------------------------------------------------------------------
    # Public surface

    @property
    def state(self) -> SessionState:
        session = self._session
        return session.state if session else SessionState.CLOSED

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def is_capturing(self) -> bool:
        task = self._capture_task
        return task is not None and not task.done()

    async def start(self) -> bool:
        """Load the wake word model (if any) and start listening for it."""
        self._publish_state(SessionState.CLOSED)
        started = await self.wake_word.load_and_listen(self.on_wake_detected)
        if not started:
            self._logger.info("Wake word not available; use the open command to talk to Gennie")
        self._publish_wake_state()
        return started

    async def shutdown(self) -> None:
        await self.close()
        with contextlib.suppress(asyncio.CancelledError):
            if self._open_task and not self._open_task.done():
                self._open_task.cancel()
                await self._open_task
        await self.wake_word.release()
        self._publish_wake_state()

    def on_wake_detected(self) -> None:
        if self._session is not None:
            self._logger.debug("Wake word ignored; conversation already open")
            return
        self._logger.info("Wake word detected; opening conversation")
        self.request_open()

    def request_open(self) -> None:
        """Schedule an open unless a session exists or an open is in flight."""
        if self._session is not None:
            return
        if self._open_task is not None and not self._open_task.done():
            return
        self._open_task = asyncio.create_task(self.open(), name="gennie-open")

    async def handle_command(self, command: str) -> None:
        action = (command or "").strip().lower()
        if action not in COMMANDS:
            self._logger.warning("Ignoring unknown assistant command: %s", command)
            return
        if action == "toggle":
            action = "close" if self._session is not None else "open"
        if action == "open":
            self.request_open()
        else:
            await self.close()

    async def open(self) -> bool:
        if self._session is not None:
            return False
        session = Session(state=SessionState.OPENING)
        self._session = session
        self._capture_failures = 0
        self._publish_state(SessionState.OPENING)
        await self.wake_word.pause()
        self._publish_wake_state()
        greeting = self.config.conversation.greeting
        self._add_message(greeting, "assistant")
        await self._speak(greeting)
        if self._session is not session:
            return False
        await self._enter_listening()
        return True

    async def close(self) -> None:
        if self._session is None:
            return
        task = self._close_task
        if task is None or task.done():
            task = asyncio.create_task(self._close(), name="gennie-close")
            self._close_task = task
        await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Capture pipeline

    async def _enter_listening(self) -> None:
        session = self._session
        if session is None or session.closing_requested:
            return
        self._set_state(SessionState.LISTENING)
        await self._start_capture()

    async def _start_capture(self) -> None:
        if self.is_capturing:
            return
        session = self._session
        if session is None:
            return
        try:
            self.arbiter.acquire(CAPTURE)
        except AudioResourceBusy as exc:
            self._logger.error("Unable to start capture: %s", exc)
            self._add_message("I can't use the microphone right now.", "system")
            return
        self.vad.reset()
        self._preroll.clear()
        session.is_capturing = True
        self._capture_task = asyncio.create_task(self._capture_loop(session), name="gennie-capture")

    async def _capture_loop(self, session: Session) -> None:
        monitor = AudioLevelMonitor(
            self.mic,
            sample_width=self.config.mic.width,
            full_scale=self.config.vad.level_full_scale,
            clock=self._clock,
        )
        recover = False
        try:
            async for sample in monitor:
                self._capture_failures = 0
                if self.publisher:
                    self.publisher.publish_level(sample.volume)
                event = self.vad.process(sample.volume, sample.at)
                try:
                    await self._route_audio(sample.chunk, event)
                except TranscriptionError as exc:
                    self._logger.warning("Transcription failed: %s", exc)
                    await self.transcriber.abort()
                    self._add_message(f"Speech recognition problem: {exc}", "system")
        except asyncio.CancelledError:
            raise
        except PermissionDenied as exc:
            self._logger.error("Microphone access denied: %s", exc)
            self._add_message("Microphone access was denied.", "system")
        except Exception as exc:
            self._logger.exception("Capture failed")
            self._add_message(f"Microphone problem: {exc}", "system")
            recover = True
        finally:
            session.is_capturing = False
            self.arbiter.release(CAPTURE)
        if recover:
            self._schedule_capture_recovery(session)

    def _schedule_capture_recovery(self, session: Session) -> None:
        self._capture_failures += 1
        if self._capture_failures > CAPTURE_RETRY_LIMIT:
            self._logger.error("Microphone failed %d times in a row; not retrying", CAPTURE_RETRY_LIMIT)
            self._add_message("The microphone keeps failing. Close and reopen Gennie to try again.", "system")
            return
        delay = self.capture_retry_delay * self._capture_failures
        self._recovery_task = asyncio.create_task(
            self._recover_capture(session, delay), name="gennie-capture-retry"
        )

    async def _recover_capture(self, session: Session, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._session is not session or session.closing_requested:
            return
        if session.state is not SessionState.LISTENING or self._turn_in_flight() or self.is_capturing:
            return
        self._logger.info("Restarting microphone capture (attempt %d)", self._capture_failures)
        await self.transcriber.abort()
        await self.mic.stop()
        await self._start_capture()

    async def _route_audio(self, chunk: bytes, event: VadEvent | None) -> None:
        if self.transcriber.is_active:
            await self.transcriber.feed(chunk)
        else:
            self._preroll.append(chunk)

        if event is VadEvent.SPEECH_START:
            if self.state is SessionState.LISTENING and not self._turn_in_flight():
                preroll = list(self._preroll)
                self._preroll.clear()
                await self.transcriber.start(preroll)
        elif event is VadEvent.SPEECH_END:
            if self.transcriber.is_active and not self._turn_in_flight():
                self._turn_task = asyncio.create_task(self._complete_utterance(), name="gennie-turn")

    def _turn_in_flight(self) -> bool:
        task = self._turn_task
        return task is not None and not task.done()

    async def _stop_capture(self) -> None:
        await self.transcriber.abort()
        task = self._capture_task
        self._capture_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.mic.stop()
        self.arbiter.release(CAPTURE)
        self.vad.reset()
        self._preroll.clear()
        if self._session is not None:
            self._session.is_capturing = False

    # ------------------------------------------------------------------
    # Turn handling

    async def _complete_utterance(self) -> None:
        session = self._session
        if session is None:
            return
        try:
            text = await self.transcriber.finish()
        except RecognitionTransient as exc:
            self._logger.debug("No usable speech: %s", exc)
            return
        except TranscriptionError as exc:
            self._logger.warning("Transcription failed: %s", exc)
            self._add_message(f"Speech recognition problem: {exc}", "system")
            return
        if self._session is not session or session.state is not SessionState.LISTENING:
            return
        session.transcript_buffer.append(text)
        utterance = session.take_transcript()
        if not utterance:
            return
        self._add_message(utterance, "user")
        await self._handle_utterance(session, utterance)

    async def _handle_utterance(self, session: Session, utterance: str) -> None:
        self._set_state(SessionState.THINKING)
        try:
            outcome = await self.resolver.resolve(utterance, self.context)
        except Exception as exc:
            self._logger.exception("Intent resolution failed")
            self._add_message(f"Something went wrong: {exc}", "system")
            outcome = IntentOutcome(UNDERSTANDING_FALLBACK, failed=True)
        if self._session is not session:
            return
        if outcome.closing:
            session.closing_requested = True
        if outcome.navigation is not None:
            self._dispatch_navigation(outcome.navigation)
        if outcome.text:
            self._add_message(outcome.text, "assistant")
            await self._speak(outcome.text)
        if self._session is not session:
            return
        if session.closing_requested:
            self._set_state(SessionState.LISTENING)
            self._logger.info("Closing phrase heard; closing in %.1fs", self.config.conversation.close_grace_seconds)
            await asyncio.sleep(self.config.conversation.close_grace_seconds)
            await self.close()
            return
        await self._enter_listening()

    def _dispatch_navigation(self, target: NavigationTarget) -> None:
        try:
            event = self.navigator.navigate(target)
        except Exception as exc:
            self._logger.exception("Navigation to %s failed", target.path)
            self._add_message(f"Unable to open {target.path}: {exc}", "system")
            return
        if self.publisher:
            self.publisher.publish_navigation(event)

    async def _speak(self, text: str) -> None:
        session = self._session
        if session is None:
            return
        self._set_state(SessionState.SPEAKING)
        await self._stop_capture()
        session.is_speaking = True
        try:
            async with self.arbiter.hold(PLAYBACK):
                await self.speaker.speak(text)
        except (PlaybackError, PermissionDenied, AudioResourceBusy) as exc:
            self._logger.error("Playback failed: %s", exc)
            self._add_message(f"Audio playback problem: {exc}", "system")
        finally:
            session.is_speaking = False

    # ------------------------------------------------------------------
    # Teardown

    async def _close(self) -> None:
        session = self._session
        if session is None:
            return
        self._set_state(SessionState.CLOSING)
        current = asyncio.current_task()
        try:
            for task in (self._turn_task, self._open_task, self._recovery_task):
                if task is not None and task is not current and not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
            await self._stop_capture()
            await self.speaker.stop()
        finally:
            await self.mic.stop()
            self.arbiter.release(CAPTURE)
            self.arbiter.release(PLAYBACK)
            session.clear()
            self.resolver.reset()
            self._session = None
            self._turn_task = None
            self._recovery_task = None
            if self.publisher:
                self.publisher.publish_messages_cleared()
            self._publish_state(SessionState.CLOSED)
            self._logger.info("Conversation closed")
        await asyncio.sleep(self.config.conversation.resume_delay_seconds)
        if self._session is None:
            await self._resume_wake_word()

    async def _resume_wake_word(self) -> None:
        try:
            await self.wake_word.resume()
        except AssistantError as exc:
            self._logger.error("Unable to resume wake word listening: %s", exc)
        self._publish_wake_state()

    # ------------------------------------------------------------------
    # Helpers

    def _set_state(self, state: SessionState) -> None:
        session = self._session
        if session is None or session.state is state:
            return
        self._logger.debug("Conversation state %s -> %s", session.state.value, state.value)
        session.state = state
        self._publish_state(state)

    def _publish_state(self, state: SessionState) -> None:
        if self.publisher:
            self.publisher.publish_state(state.value)

    def _publish_wake_state(self) -> None:
        if self.publisher:
            self.publisher.publish_wake_state(self.wake_word.state.value)

    def _add_message(self, text: str, sender: Sender) -> Message | None:
        session = self._session
        if session is None:
            return None
        message = session.add_message(text, sender)
        if self.publisher:
            self.publisher.publish_message(message)
        return message

    def _on_interim(self, text: str) -> None:
        if self.publisher:
            self.publisher.publish_interim(text)

    def _on_wake_error(self, exc: Exception) -> None:
        self._logger.warning("Wake word engine error: %s", exc)
        self._publish_wake_state()
