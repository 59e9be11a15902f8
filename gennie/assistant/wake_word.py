"""On-device wake word enrollment, training and detection."""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import Enum

import numpy as np

from .audio import MicrophoneStream
from .config import MicConfig, WakeWordConfig
from .errors import (
    AssistantError,
    CollectionInProgress,
    InsufficientExamples,
    ModelLoadFailure,
    WakeWordBusy,
)
from .persistence import BlobStore
from .resources import WAKE_WORD, AudioResourceArbiter
from .wake_model import (
    BLOB_KEY,
    LABELS,
    WAKE_LABEL,
    ExemplarSet,
    LogFilterbankExtractor,
    SoftmaxClassifier,
    pcm_to_float,
)

LOGGER = logging.getLogger("gennie-assistant.wake")


def _score_window(
    extractor: LogFilterbankExtractor, classifier: SoftmaxClassifier, window: bytes, width: int, channels: int
) -> np.ndarray:
    """Class probabilities for one window; runs in a worker thread."""
    return classifier.predict_proba(extractor.extract(pcm_to_float(window, width, channels)))


class WakeWordState(str, Enum):
    UNLOADED = "unloaded"
    BASE_LOADED = "base_loaded"
    UNTRAINED = "untrained"
    TRAINED = "trained"
    LISTENING = "listening"
    PAUSED = "paused"
    RELEASED = "released"
    FAILED = "failed"


@dataclass
class TrainingCallbacks:
    on_progress: Callable[[str], None] | None = None
    on_epoch: Callable[[int, int, float], None] | None = None
    on_complete: Callable[[float], None] | None = None
    on_error: Callable[[str], None] | None = None

    def progress(self, message: str) -> None:
        if self.on_progress:
            self.on_progress(message)

    def epoch(self, epoch: int, total: int, accuracy: float) -> None:
        if self.on_epoch:
            self.on_epoch(epoch, total, accuracy)
        self.progress(f"Training... Epoch {epoch}/{total} ({accuracy * 100:.1f}% accuracy)")

    def complete(self, accuracy: float) -> None:
        if self.on_complete:
            self.on_complete(accuracy)

    def error(self, message: str) -> None:
        if self.on_error:
            self.on_error(message)


class WakeWordBackend:
    """Capability surface the conversation controller relies on."""

    @property
    def state(self) -> WakeWordState:
        raise NotImplementedError

    async def load_base_model(self) -> None:
        raise NotImplementedError

    async def train(self, callbacks: TrainingCallbacks | None = None) -> float:
        raise NotImplementedError

    async def start_listening(self, on_wake: Callable[[], None] | None = None) -> bool:
        raise NotImplementedError

    async def pause(self) -> None:
        raise NotImplementedError

    async def resume(self) -> bool:
        raise NotImplementedError

    async def export_model(self) -> str | None:
        raise NotImplementedError

    async def reset_model(self) -> None:
        raise NotImplementedError


class WakeWordEngine(WakeWordBackend):
    """Trainable two-label wake word detector scoring overlapping windows.

    The engine owns the microphone while listening or recording an example and
    never while the conversation pipeline is capturing.
    """

    def __init__(
        self,
        config: WakeWordConfig,
        mic_config: MicConfig,
        mic: MicrophoneStream,
        store: BlobStore,
        *,
        arbiter: AudioResourceArbiter | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self._mic_config = mic_config
        self._mic = mic
        self._store = store
        self._arbiter = arbiter
        self._logger = logger or LOGGER
        self.on_error: Callable[[Exception], None] | None = None
        self._extractor: LogFilterbankExtractor | None = None
        self._load_task: asyncio.Task[LogFilterbankExtractor] | None = None
        self._load_and_listen_task: asyncio.Task[bool] | None = None
        self._examples = ExemplarSet(mic_config.rate, mic_config.width, mic_config.channels)
        self._classifier: SoftmaxClassifier | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._on_wake: Callable[[], None] | None = None
        self._collecting = False
        self._training = False
        self._paused = False
        self._released = False
        self._failure: Exception | None = None
        self._log_throttle: dict[str, float] = {}

    # ------------------------------------------------------------------
    # State

    @property
    def state(self) -> WakeWordState:
        if self._released:
            return WakeWordState.RELEASED
        if self._failure is not None:
            return WakeWordState.FAILED
        if self.is_listening:
            return WakeWordState.LISTENING
        if self._paused:
            return WakeWordState.PAUSED
        if self._extractor is None:
            return WakeWordState.UNLOADED
        if self._classifier is not None and self._classifier.trained:
            return WakeWordState.TRAINED
        if self._examples.total():
            return WakeWordState.UNTRAINED
        return WakeWordState.BASE_LOADED

    @property
    def is_listening(self) -> bool:
        task = self._listen_task
        return task is not None and not task.done()

    @property
    def is_collecting(self) -> bool:
        return self._collecting

    @property
    def failure(self) -> Exception | None:
        return self._failure

    def example_counts(self) -> dict[str, int]:
        return self._examples.counts()

    async def has_trained_model(self) -> bool:
        if self.config.bundled_model:
            return True
        try:
            return await self._store.exists(BLOB_KEY)
        except OSError:
            self._logger.warning("Unable to check for stored wake word examples", exc_info=True)
            return False

    # ------------------------------------------------------------------
    # Loading

    async def load_base_model(self) -> None:
        """Initialise the feature extractor; concurrent callers share one task."""
        task = self._load_task
        if task is None:
            task = asyncio.create_task(self._build_extractor(), name="wake-word-load")
            self._load_task = task
        try:
            self._extractor = await asyncio.shield(task)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._load_task is task:
                self._load_task = None
            self._report_error(exc)
            if isinstance(exc, ModelLoadFailure):
                raise
            raise ModelLoadFailure(f"Unable to load wake word feature extractor: {exc}") from exc
        self._failure = None
        self._released = False

    async def _build_extractor(self) -> LogFilterbankExtractor:
        self._logger.debug("Loading wake word feature extractor")
        extractor = await asyncio.to_thread(
            LogFilterbankExtractor,
            self._mic_config.rate,
            self._window_samples,
        )
        self._logger.info("Wake word feature extractor ready (%d features)", extractor.feature_size)
        return extractor

    @property
    def _window_samples(self) -> int:
        return int(self._mic_config.rate * self.config.window_ms / 1000)

    @property
    def _window_bytes(self) -> int:
        return self._window_samples * self._mic_config.width * self._mic_config.channels

    # ------------------------------------------------------------------
    # Enrollment and training

    async def collect_example(self, label: str) -> dict[str, int]:
        """Record one window of audio as an exemplar for ``label``."""
        if label not in LABELS:
            raise ValueError(f"Unknown wake word label: {label}")
        if self._collecting:
            raise CollectionInProgress("Already recording a wake word example")
        if self._training:
            raise WakeWordBusy("Wake word training in progress")
        self._collecting = True
        try:
            if self.is_listening:
                await self.stop_listening()
            await self.load_base_model()
            audio = await self._record_window()
            self._examples.add(label, audio)
        finally:
            self._collecting = False
        counts = self._examples.counts()
        self._logger.info("Collected %s example (%s)", label, counts)
        return counts

    async def _record_window(self) -> bytes:
        async with self._hold_microphone():
            await self._mic.start()
            try:
                return await self._mic.read_seconds(self.config.window_ms / 1000, self._mic_config.chunk_ms)
            finally:
                await self._mic.stop()

    async def train(self, callbacks: TrainingCallbacks | None = None) -> float:
        """Train on the collected exemplars and persist them; returns accuracy."""
        callbacks = callbacks or TrainingCallbacks()
        try:
            if self.is_listening:
                raise WakeWordBusy("Stop wake word listening before training")
            if self._collecting or self._training:
                raise WakeWordBusy("Wake word engine is busy")
            counts = self._examples.counts()
            if any(counts[label] < self.config.min_examples for label in LABELS):
                raise InsufficientExamples(counts, self.config.min_examples)
            self._training = True
            try:
                accuracy = await self._train(callbacks)
            finally:
                self._training = False
        except AssistantError as exc:
            callbacks.error(str(exc))
            self._report_error(exc)
            raise
        callbacks.progress("Done!")
        callbacks.complete(accuracy)
        self._logger.info("Wake word model trained (accuracy %.1f%%)", accuracy * 100)
        return accuracy

    async def _train(self, callbacks: TrainingCallbacks) -> float:
        await self.load_base_model()
        callbacks.progress("Training neural network...")
        features, targets = await asyncio.to_thread(self._training_set, self._examples.snapshot())
        classifier = SoftmaxClassifier(LABELS, features.shape[1])
        classifier.prepare(features)
        epochs = self.config.epochs
        for epoch in range(epochs):
            accuracy = await asyncio.to_thread(classifier.step, features, targets, self.config.learning_rate)
            callbacks.epoch(epoch + 1, epochs, accuracy)
        classifier.trained = True
        final_accuracy = classifier.accuracy(features, targets)
        self._classifier = classifier
        callbacks.progress("Saving model...")
        try:
            await self._store.put(BLOB_KEY, self._examples.serialize())
        except OSError as exc:
            raise ModelLoadFailure(f"Unable to save wake word examples: {exc}") from exc
        return final_accuracy

    def _training_set(self, samples: list[tuple[str, bytes]]) -> tuple[np.ndarray, np.ndarray]:
        extractor = self._extractor
        if extractor is None:
            raise ModelLoadFailure("Wake word feature extractor not loaded")
        rows = [
            extractor.extract(pcm_to_float(audio, self._examples.sample_width, self._examples.channels))
            for _, audio in samples
        ]
        targets = np.array([LABELS.index(label) for label, _ in samples], dtype=np.int64)
        return np.vstack(rows), targets

    async def _retrain_quietly(self) -> None:
        await self.load_base_model()
        features, targets = await asyncio.to_thread(self._training_set, self._examples.snapshot())
        classifier = SoftmaxClassifier(LABELS, features.shape[1])
        accuracy = await asyncio.to_thread(
            classifier.fit,
            features,
            targets,
            epochs=self.config.epochs,
            learning_rate=self.config.learning_rate,
        )
        self._classifier = classifier
        self._logger.debug("Re-trained wake word model from stored examples (accuracy %.1f%%)", accuracy * 100)

    # ------------------------------------------------------------------
    # Listening

    async def start_listening(self, on_wake: Callable[[], None] | None = None) -> bool:
        """Start the detection loop; returns False when no trained model exists."""
        if on_wake is not None:
            self._on_wake = on_wake
        if self.is_listening:
            self._logger.debug("Wake word listener already running")
            return True
        if self._failure is not None:
            raise ModelLoadFailure("Wake word engine failed; reload or reset before listening")
        if self._collecting or self._training:
            raise WakeWordBusy("Wake word engine is busy")
        classifier = self._classifier
        extractor = self._extractor
        if classifier is None or not classifier.trained or extractor is None:
            self._logger.info("No trained wake word model; not listening")
            return False
        if self._on_wake is None:
            raise ValueError("A wake callback is required to start listening")
        if self._arbiter:
            self._arbiter.acquire(WAKE_WORD)
        self._paused = False
        self._listen_task = asyncio.create_task(self._listen_loop(extractor, classifier), name="wake-word-listener")
        return True

    async def _listen_loop(self, extractor: LogFilterbankExtractor, classifier: SoftmaxClassifier) -> None:
        width = self._mic_config.width
        channels = self._mic_config.channels
        frame_bytes = width * channels
        window_bytes = self._window_bytes
        hop_bytes = int(window_bytes * (1.0 - self.config.overlap))
        hop_bytes = max(frame_bytes, hop_bytes - hop_bytes % frame_bytes)
        wake_index = classifier.labels.index(WAKE_LABEL)
        buffer = bytearray()
        pending = 0
        try:
            await self._mic.start()
            self._logger.info("Wake word listener active")
            while True:
                chunk = await self._mic.read_chunk()
                buffer.extend(chunk)
                pending += len(chunk)
                if len(buffer) > window_bytes:
                    del buffer[: len(buffer) - window_bytes]
                if len(buffer) < window_bytes or pending < hop_bytes:
                    continue
                pending = 0
                probabilities = await asyncio.to_thread(
                    _score_window, extractor, classifier, bytes(buffer), width, channels
                )
                best = int(np.argmax(probabilities))
                score = float(probabilities[wake_index])
                self._debug_throttled("wake_score", "Wake word score %.3f", score, interval=5.0)
                if best == wake_index and score > self.config.threshold:
                    self._logger.info("Wake word detected (confidence %.1f%%)", score * 100)
                    buffer.clear()
                    callback = self._on_wake
                    if callback:
                        callback()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._failure = exc
            self._logger.exception("Wake word inference failed; listener stopped")
            self._report_error(exc)
        finally:
            await self._mic.stop()
            if self._arbiter:
                self._arbiter.release(WAKE_WORD)

    async def stop_listening(self) -> None:
        task = self._listen_task
        self._listen_task = None
        if task is None:
            return
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await asyncio.sleep(self.config.settle_ms / 1000)
        self._logger.info("Wake word listener stopped")

    async def pause(self) -> None:
        """Release the microphone while keeping the wake callback registered."""
        await self.stop_listening()
        if self._on_wake is not None and not self._released:
            self._paused = True

    async def resume(self) -> bool:
        if self._on_wake is None or self._classifier is None:
            self._paused = False
            return False
        return await self.start_listening()

    async def load_and_listen(self, on_wake: Callable[[], None]) -> bool:
        """Load stored (or bundled) examples, retrain, and start listening.

        Concurrent calls share one in-flight attempt.
        """
        task = self._load_and_listen_task
        if task is None or task.done():
            task = asyncio.create_task(self._load_and_listen(on_wake), name="wake-word-load-and-listen")
            self._load_and_listen_task = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._load_and_listen_task is task and task.done():
                self._load_and_listen_task = None

    async def _load_and_listen(self, on_wake: Callable[[], None]) -> bool:
        try:
            data = await self._store.get(BLOB_KEY)
            if data is None and self.config.bundled_model:
                self._logger.info("Loading bundled wake word examples")
                data = base64.b64decode(self.config.bundled_model, validate=True)
                await self._store.put(BLOB_KEY, data)
            if data is None:
                self._logger.info("No trained wake word model found")
                return False
            examples = ExemplarSet.deserialize(data)
            if examples.sample_rate != self._mic_config.rate or examples.sample_width != self._mic_config.width:
                raise ModelLoadFailure(
                    f"Stored examples use {examples.sample_rate} Hz/{examples.sample_width} bytes; "
                    f"microphone is {self._mic_config.rate} Hz/{self._mic_config.width} bytes"
                )
            await self.load_base_model()
            self._examples = examples
            await self._retrain_quietly()
            started = await self.start_listening(on_wake)
        except (AssistantError, OSError, binascii.Error) as exc:
            self._logger.error("Failed to load wake word model: %s", exc)
            self._report_error(exc)
            return False
        if started:
            self._logger.info("Wake word detection active")
        return started

    # ------------------------------------------------------------------
    # Export / reset

    async def export_model(self) -> str | None:
        """Base64 of the serialized exemplar set, or None when nothing exists."""
        if self._examples.total():
            data: bytes | None = self._examples.serialize()
        else:
            data = await self._store.get(BLOB_KEY)
        if not data:
            return None
        return base64.b64encode(data).decode("ascii")

    async def release(self) -> None:
        await self.stop_listening()
        load_task = self._load_task
        if load_task is not None and not load_task.done():
            load_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await load_task
        self._load_task = None
        self._extractor = None
        self._classifier = None
        self._examples.clear()
        self._on_wake = None
        self._paused = False
        self._failure = None
        self._released = True

    async def reset_model(self) -> None:
        """Delete persisted exemplars and return to the unloaded state."""
        await self.release()
        await self._store.delete(BLOB_KEY)
        self._released = False
        self._logger.info("Wake word model deleted")

    # ------------------------------------------------------------------
    # Helpers

    @contextlib.asynccontextmanager
    async def _hold_microphone(self) -> AsyncIterator[None]:
        if self._arbiter is None:
            yield
            return
        async with self._arbiter.hold(WAKE_WORD):
            yield

    def _report_error(self, exc: Exception) -> None:
        callback = self.on_error
        if callback:
            callback(exc)

    def _debug_throttled(self, key: str, message: str, *args, interval: float = 30.0) -> None:
        now = time.monotonic()
        last = self._log_throttle.get(key, 0.0)
        if now - last >= interval:
            self._logger.debug(message, *args)
            self._log_throttle[key] = now
