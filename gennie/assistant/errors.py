"""Error taxonomy for the voice pipeline."""

from __future__ import annotations


class AssistantError(RuntimeError):
    """Base class for voice pipeline failures."""


class PermissionDenied(AssistantError):
    """Microphone or audio device access was refused.

    Fatal to every voice feature; never retried without new consent.
    """


class ModelLoadFailure(AssistantError):
    """The wake-word feature extractor or exemplars could not be loaded."""


class RateLimited(AssistantError):
    """The classifier signalled throttling (HTTP 429)."""

    def __init__(self, message: str = "Classifier rate limited", *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ClassifierFailure(AssistantError):
    """Any non-throttling classifier error."""


class ActionExecutionFailure(AssistantError):
    """A collaborator call failed while executing an action."""


class RecognitionTransient(AssistantError):
    """No speech or an aborted recognition; treated as silence."""


class TranscriptionError(AssistantError):
    """Transcription failed in a way that ends the current listening cycle."""


class PlaybackError(AssistantError):
    """Speech synthesis or audio playback failed."""


class WakeWordBusy(AssistantError):
    """Wake-word operation refused because inference is active."""


class CollectionInProgress(WakeWordBusy):
    """An exemplar recording is already running."""


class InsufficientExamples(AssistantError):
    """Training requested before every class has enough exemplars."""

    def __init__(self, counts: dict[str, int], minimum: int) -> None:
        detail = ", ".join(f"{label}={count}" for label, count in sorted(counts.items())) or "no examples"
        super().__init__(f"Need at least {minimum} examples per label ({detail})")
        self.counts = dict(counts)
        self.minimum = minimum


class AudioResourceBusy(AssistantError):
    """The microphone/speaker is owned by another subsystem."""

    def __init__(self, requested: str, owner: str) -> None:
        super().__init__(f"Audio resource requested by {requested} is held by {owner}")
        self.requested = requested
        self.owner = owner
