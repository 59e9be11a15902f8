"""Acoustic features, classifier and exemplar storage for the wake word."""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import numpy as np

from .errors import ModelLoadFailure

WAKE_LABEL = "hi_gennie"
BACKGROUND_LABEL = "_background_noise_"
LABELS = (BACKGROUND_LABEL, WAKE_LABEL)
BLOB_KEY = "transfer-examples"
BLOB_FORMAT = "gennie-wake-examples"
BLOB_VERSION = 1

_PCM_DTYPES = {
    2: ("<i2", 32768.0),
    4: ("<i4", 2147483648.0),
}


def pcm_to_float(audio: bytes, width: int, channels: int = 1) -> np.ndarray:
    """Decode little-endian PCM into mono float samples in [-1, 1]."""
    if width == 1:
        samples = (np.frombuffer(audio, dtype=np.uint8).astype(np.float64) - 128.0) / 128.0
    else:
        entry = _PCM_DTYPES.get(width)
        if entry is None:
            raise ValueError(f"Unsupported sample width: {width}")
        dtype, scale = entry
        usable = len(audio) - (len(audio) % width)
        samples = np.frombuffer(audio[:usable], dtype=dtype).astype(np.float64) / scale
    if channels > 1:
        frames = len(samples) // channels
        samples = samples[: frames * channels].reshape(frames, channels)[:, 0]
    return samples


def _hz_to_mel(hz: np.ndarray | float) -> np.ndarray | float:
    return 2595.0 * np.log10(1.0 + np.asarray(hz) / 700.0)


def _mel_to_hz(mel: np.ndarray | float) -> np.ndarray | float:
    return 700.0 * (10.0 ** (np.asarray(mel) / 2595.0) - 1.0)


def mel_filterbank(sample_rate: int, n_fft: int, n_bands: int, fmin: float = 20.0) -> np.ndarray:
    """Triangular mel-spaced filters of shape ``(n_bands, n_fft // 2 + 1)``."""
    fmax = sample_rate / 2.0
    mel_points = np.linspace(_hz_to_mel(fmin), _hz_to_mel(fmax), n_bands + 2)
    edges = np.asarray(_mel_to_hz(mel_points))
    freqs = np.linspace(0.0, fmax, n_fft // 2 + 1)
    lower = edges[:-2, None]
    center = edges[1:-1, None]
    upper = edges[2:, None]
    rising = (freqs[None, :] - lower) / (center - lower)
    falling = (upper - freqs[None, :]) / (upper - center)
    return np.maximum(0.0, np.minimum(rising, falling))


class LogFilterbankExtractor:
    """Fixed-size feature vector for one audio window.

    Log filterbank energies are computed over short FFT frames, then pooled into
    ``segments`` time slices (mean per band) plus the per-band standard
    deviation over the whole window.
    """

    def __init__(
        self,
        sample_rate: int,
        window_samples: int,
        *,
        frame_ms: int = 25,
        hop_ms: int = 10,
        n_bands: int = 40,
        segments: int = 4,
    ) -> None:
        self.sample_rate = sample_rate
        self.window_samples = window_samples
        self.frame_length = max(1, int(sample_rate * frame_ms / 1000))
        self.hop_length = max(1, int(sample_rate * hop_ms / 1000))
        self.n_fft = 1 << (self.frame_length - 1).bit_length()
        self.n_bands = n_bands
        self.segments = segments
        self.window = np.hamming(self.frame_length)
        self.filterbank = mel_filterbank(sample_rate, self.n_fft, n_bands)

    @property
    def feature_size(self) -> int:
        return self.n_bands * (self.segments + 1)

    def log_energies(self, samples: np.ndarray) -> np.ndarray:
        if len(samples) < self.frame_length:
            samples = np.pad(samples, (0, self.frame_length - len(samples)))
        count = 1 + (len(samples) - self.frame_length) // self.hop_length
        index = np.arange(self.frame_length)[None, :] + self.hop_length * np.arange(count)[:, None]
        frames = samples[index] * self.window
        power = np.abs(np.fft.rfft(frames, n=self.n_fft, axis=1)) ** 2 / self.n_fft
        return np.log(power @ self.filterbank.T + 1e-10)

    def extract(self, samples: np.ndarray) -> np.ndarray:
        if len(samples) >= self.window_samples:
            samples = samples[-self.window_samples :]
        else:
            samples = np.pad(samples, (self.window_samples - len(samples), 0))
        energies = self.log_energies(samples)
        pooled = [segment.mean(axis=0) for segment in np.array_split(energies, self.segments, axis=0)]
        pooled.append(energies.std(axis=0))
        return np.concatenate(pooled)


def _softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - logits.max(axis=-1, keepdims=True)
    exp = np.exp(shifted)
    return exp / exp.sum(axis=-1, keepdims=True)


class SoftmaxClassifier:
    """Multinomial logistic regression over standardized features.

    Weights start at zero and training is full-batch gradient descent, so the
    same exemplars always produce the same model.
    """

    def __init__(self, labels: Sequence[str], n_features: int, *, l2: float = 1e-3) -> None:
        self.labels = tuple(labels)
        self.weights = np.zeros((n_features, len(self.labels)))
        self.bias = np.zeros(len(self.labels))
        self.mean = np.zeros(n_features)
        self.scale = np.ones(n_features)
        self.l2 = l2
        self.trained = False

    def prepare(self, features: np.ndarray) -> None:
        self.mean = features.mean(axis=0)
        std = features.std(axis=0)
        self.scale = np.where(std < 1e-8, 1.0, std)
        self.weights[:] = 0.0
        self.bias[:] = 0.0
        self.trained = False

    def _standardize(self, features: np.ndarray) -> np.ndarray:
        return (features - self.mean) / self.scale

    def step(self, features: np.ndarray, targets: np.ndarray, learning_rate: float) -> float:
        """Run one epoch and return the accuracy measured before the update."""
        x = self._standardize(features)
        probs = _softmax(x @ self.weights + self.bias)
        onehot = np.eye(len(self.labels))[targets]
        grad = (probs - onehot) / len(targets)
        self.weights -= learning_rate * (x.T @ grad + self.l2 * self.weights)
        self.bias -= learning_rate * grad.sum(axis=0)
        return float(np.mean(np.argmax(probs, axis=1) == targets))

    def fit(
        self,
        features: np.ndarray,
        targets: np.ndarray,
        *,
        epochs: int,
        learning_rate: float,
        on_epoch: Callable[[int, float], None] | None = None,
    ) -> float:
        self.prepare(features)
        for epoch in range(epochs):
            accuracy = self.step(features, targets, learning_rate)
            if on_epoch:
                on_epoch(epoch + 1, accuracy)
        self.trained = True
        return self.accuracy(features, targets)

    def accuracy(self, features: np.ndarray, targets: np.ndarray) -> float:
        predictions = np.argmax(self.predict_proba(features), axis=-1)
        return float(np.mean(predictions == targets))

    def predict_proba(self, features: np.ndarray) -> np.ndarray:
        return _softmax(self._standardize(features) @ self.weights + self.bias)


@dataclass
class ExemplarSet:
    """Labelled raw PCM recordings, one list per label."""

    sample_rate: int
    sample_width: int
    channels: int = 1
    examples: dict[str, list[bytes]] = field(default_factory=lambda: {label: [] for label in LABELS})

    def add(self, label: str, audio: bytes) -> None:
        if label not in LABELS:
            raise ValueError(f"Unknown wake word label: {label}")
        self.examples.setdefault(label, []).append(audio)

    def counts(self) -> dict[str, int]:
        return {label: len(self.examples.get(label, [])) for label in LABELS}

    def total(self) -> int:
        return sum(self.counts().values())

    def clear(self) -> None:
        self.examples = {label: [] for label in LABELS}

    def snapshot(self) -> list[tuple[str, bytes]]:
        return [(label, audio) for label in LABELS for audio in self.examples.get(label, [])]

    def serialize(self) -> bytes:
        payload = {
            "format": BLOB_FORMAT,
            "version": BLOB_VERSION,
            "sample_rate": self.sample_rate,
            "sample_width": self.sample_width,
            "channels": self.channels,
            "labels": {
                label: [base64.b64encode(audio).decode("ascii") for audio in self.examples.get(label, [])]
                for label in LABELS
            },
        }
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    @classmethod
    def deserialize(cls, data: bytes) -> ExemplarSet:
        try:
            payload = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ModelLoadFailure("Wake word examples are not valid JSON") from exc
        if not isinstance(payload, dict) or payload.get("format") != BLOB_FORMAT:
            raise ModelLoadFailure("Unrecognized wake word example format")
        if payload.get("version") != BLOB_VERSION:
            raise ModelLoadFailure(f"Unsupported wake word example version: {payload.get('version')}")
        labels = payload.get("labels")
        if not isinstance(labels, dict):
            raise ModelLoadFailure("Wake word examples missing labels")
        try:
            examples = {
                label: [base64.b64decode(item, validate=True) for item in labels.get(label, [])] for label in LABELS
            }
            return cls(
                sample_rate=int(payload["sample_rate"]),
                sample_width=int(payload["sample_width"]),
                channels=int(payload.get("channels", 1)),
                examples=examples,
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as exc:
            raise ModelLoadFailure(f"Corrupt wake word examples: {exc}") from exc
