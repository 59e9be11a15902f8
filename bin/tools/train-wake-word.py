#!/usr/bin/env python3
"""Record "Hi Gennie" and background examples, then train the on-device wake word."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

try:
    from gennie.assistant.audio import MicrophoneStream
    from gennie.assistant.config import AssistantConfig
    from gennie.assistant.errors import AssistantError
    from gennie.assistant.persistence import BlobStore
    from gennie.assistant.wake_model import BACKGROUND_LABEL, WAKE_LABEL
    from gennie.assistant.wake_word import TrainingCallbacks, WakeWordEngine
except ModuleNotFoundError:  # pragma: no cover - runtime convenience
    repo_root = Path(__file__).resolve().parents[2]
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))
    from gennie.assistant.audio import MicrophoneStream
    from gennie.assistant.config import AssistantConfig
    from gennie.assistant.errors import AssistantError
    from gennie.assistant.persistence import BlobStore
    from gennie.assistant.wake_model import BACKGROUND_LABEL, WAKE_LABEL
    from gennie.assistant.wake_word import TrainingCallbacks, WakeWordEngine

PROMPTS = {
    WAKE_LABEL: 'Say "Hi Gennie"',
    BACKGROUND_LABEL: "Stay quiet or talk about something else",
}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Enroll and train the Gennie wake word on this device.")
    parser.add_argument(
        "--count",
        type=int,
        default=None,
        help="Examples to record per label (default: GENNIE_WAKE_MIN_EXAMPLES, 20).",
    )
    parser.add_argument(
        "--export",
        action="store_true",
        help="Print the stored examples as base64 (for GENNIE_WAKE_BUNDLED_MODEL) and exit.",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Delete the stored examples and exit.",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Report whether a trained wake word is available and exit (status 1 when not).",
    )
    parser.add_argument("--log-level", default="WARNING")
    return parser.parse_args()


async def _collect(engine: WakeWordEngine, label: str, count: int) -> None:
    print(f"\n{PROMPTS[label]} when prompted ({count} recordings).")
    for index in range(count):
        await asyncio.to_thread(input, f"[{index + 1}/{count}] Press Enter, then speak... ")
        counts = await engine.collect_example(label)
        print(f"  recorded ({counts[label]} {label})")


async def run(args: argparse.Namespace) -> int:
    config = AssistantConfig.from_env()
    mic = MicrophoneStream(config.mic.command, config.mic.bytes_per_chunk)
    engine = WakeWordEngine(config.wake_word, config.mic, mic, BlobStore(config.wake_word.model_dir))

    if args.reset:
        await engine.reset_model()
        print("Wake word examples deleted.")
        return 0
    if args.status:
        trained = await engine.has_trained_model()
        print("Wake word: trained" if trained else "Wake word: not trained")
        return 0 if trained else 1
    if args.export:
        exported = await engine.export_model()
        if not exported:
            print("No wake word examples stored.", file=sys.stderr)
            return 1
        print(exported)
        return 0

    count = args.count or config.wake_word.min_examples
    if count < config.wake_word.min_examples:
        print(f"At least {config.wake_word.min_examples} examples per label are required.", file=sys.stderr)
        return 2

    callbacks = TrainingCallbacks(
        on_progress=lambda message: print(f"  {message}"),
        on_error=lambda message: print(f"Training failed: {message}", file=sys.stderr),
    )
    try:
        await engine.load_base_model()
        await _collect(engine, WAKE_LABEL, count)
        await _collect(engine, BACKGROUND_LABEL, count)
        accuracy = await engine.train(callbacks)
    except AssistantError:
        return 1
    finally:
        await mic.stop()
    counts = engine.example_counts()
    print(
        f"\nWake word trained on {counts[WAKE_LABEL]} wake and {counts[BACKGROUND_LABEL]} background examples "
        f"({accuracy * 100:.1f}% accuracy); saved to {config.wake_word.model_dir}"
    )
    return 0


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.WARNING))
    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
