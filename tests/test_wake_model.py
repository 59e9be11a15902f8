"""Tests for wake word features, classifier and exemplar blobs (gennie/assistant/wake_model.py)."""

from __future__ import annotations

import base64
import json

import numpy as np
import pytest
from conftest import pcm_tone
from gennie.assistant.errors import ModelLoadFailure
from gennie.assistant.wake_model import (
    BACKGROUND_LABEL,
    BLOB_FORMAT,
    LABELS,
    WAKE_LABEL,
    ExemplarSet,
    LogFilterbankExtractor,
    SoftmaxClassifier,
    mel_filterbank,
    pcm_to_float,
)


class TestPcmToFloat:
    def test_int16_scaling(self):
        audio = np.array([0, 16384, -32768], dtype="<i2").tobytes()
        assert pcm_to_float(audio, 2).tolist() == [0.0, 0.5, -1.0]

    def test_stereo_takes_first_channel(self):
        audio = np.array([100, -5, 200, -5], dtype="<i2").tobytes()
        samples = pcm_to_float(audio, 2, channels=2)
        assert len(samples) == 2
        assert samples[1] == pytest.approx(200 / 32768)

    def test_odd_byte_ignored(self):
        assert len(pcm_to_float(b"\x00\x00\x01", 2)) == 1

    def test_unsupported_width(self):
        with pytest.raises(ValueError):
            pcm_to_float(b"\x00" * 6, 3)


class TestFeatures:
    def test_filterbank_shape(self):
        bank = mel_filterbank(16000, 512, 40)
        assert bank.shape == (40, 257)
        assert (bank >= 0).all()

    def test_feature_vector_size(self):
        extractor = LogFilterbankExtractor(16000, 16000)
        features = extractor.extract(np.zeros(16000))
        assert extractor.feature_size == 200
        assert features.shape == (200,)

    def test_short_input_is_padded(self):
        extractor = LogFilterbankExtractor(16000, 16000)
        assert extractor.extract(np.zeros(100)).shape == (200,)

    def test_tone_differs_from_silence(self):
        extractor = LogFilterbankExtractor(16000, 4800)
        tone = extractor.extract(pcm_to_float(pcm_tone(4800, 8000), 2))
        silence = extractor.extract(np.zeros(4800))
        assert tone[:160].mean() > silence[:160].mean()


class TestSoftmaxClassifier:
    def _data(self):
        rng = np.random.default_rng(7)
        background = rng.normal(-1.0, 0.2, size=(10, 5))
        wake = rng.normal(1.0, 0.2, size=(10, 5))
        features = np.vstack([background, wake])
        targets = np.array([0] * 10 + [1] * 10)
        return features, targets

    def test_fit_separates_classes(self):
        features, targets = self._data()
        classifier = SoftmaxClassifier(LABELS, 5)
        epochs = []
        accuracy = classifier.fit(
            features, targets, epochs=20, learning_rate=0.5, on_epoch=lambda e, a: epochs.append(e)
        )
        assert accuracy == 1.0
        assert epochs == list(range(1, 21))
        assert classifier.trained
        assert classifier.predict_proba(features[-1])[1] > 0.9

    def test_training_is_deterministic(self):
        features, targets = self._data()
        first = SoftmaxClassifier(LABELS, 5)
        second = SoftmaxClassifier(LABELS, 5)
        first.fit(features, targets, epochs=10, learning_rate=0.5)
        second.fit(features, targets, epochs=10, learning_rate=0.5)
        assert np.array_equal(first.weights, second.weights)

    def test_step_reports_accuracy_before_update(self):
        features, targets = self._data()
        classifier = SoftmaxClassifier(LABELS, 5)
        classifier.prepare(features)
        # Zero weights give uniform probabilities; argmax picks label 0 for every row.
        assert classifier.step(features, targets, 0.5) == 0.5


class TestExemplarSet:
    def test_counts_and_snapshot(self):
        examples = ExemplarSet(16000, 2)
        examples.add(WAKE_LABEL, b"\x01\x00")
        examples.add(BACKGROUND_LABEL, b"\x02\x00")
        examples.add(WAKE_LABEL, b"\x03\x00")
        assert examples.counts() == {BACKGROUND_LABEL: 1, WAKE_LABEL: 2}
        assert examples.total() == 3
        assert [label for label, _ in examples.snapshot()] == [BACKGROUND_LABEL, WAKE_LABEL, WAKE_LABEL]
        examples.clear()
        assert examples.total() == 0

    def test_unknown_label(self):
        with pytest.raises(ValueError):
            ExemplarSet(16000, 2).add("hey_siri", b"")

    def test_serialized_blob_layout(self):
        examples = ExemplarSet(16000, 2)
        examples.add(WAKE_LABEL, b"abc")
        payload = json.loads(examples.serialize())
        assert payload["format"] == BLOB_FORMAT
        assert payload["labels"][WAKE_LABEL] == [base64.b64encode(b"abc").decode()]
        restored = ExemplarSet.deserialize(examples.serialize())
        assert restored.examples[WAKE_LABEL] == [b"abc"]
        assert restored.sample_rate == 16000

    @pytest.mark.parametrize(
        "blob",
        [
            b"not json",
            json.dumps({"format": "other"}).encode(),
            json.dumps({"format": BLOB_FORMAT, "version": 99}).encode(),
            json.dumps({"format": BLOB_FORMAT, "version": 1, "labels": {}}).encode(),
            json.dumps(
                {"format": BLOB_FORMAT, "version": 1, "sample_rate": 16000, "sample_width": 2, "labels": {WAKE_LABEL: ["%%"]}}
            ).encode(),
        ],
    )
    def test_corrupt_blobs(self, blob):
        with pytest.raises(ModelLoadFailure):
            ExemplarSet.deserialize(blob)
