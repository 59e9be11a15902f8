"""
ACTION token grammar and closing-phrase detection

The classifier replies in free text that may carry one action token:

- ``ACTION:NAME``: action without a value
- ``ACTION:NAME:value``: value is a non-whitespace run (colons allowed); when
  the token ends its line, the rest of that line belongs to the value so names
  such as ``Phoenix Mall`` survive intact. The value stops at sentence
  punctuation followed by a space, which keeps ``Phoenix Mall. See you there!``
  in the spoken text

Only the first token is acted on. Every token is removed from the text that is
shown and spoken.

Closing phrases end the conversation after the farewell reply. Phrases such as
"goodbye" and "see you" always close. The words "close", "exit", "stop",
"later" and "quit" close too, unless the utterance is about chargers, bookings
or trips ("stop my charging session", "chargers close to me").
"""

from __future__ import annotations

import re
from dataclasses import dataclass

ACTION_TOKEN_RE = re.compile(r"ACTION:([A-Z][A-Z0-9_]*)(?::(\S+))?")
_TRAILING_VALUE_PUNCTUATION = " \t.,;!?\"'"
_SENTENCE_BREAK_RE = re.compile(r"[.!?](?=\s)")


@dataclass(frozen=True)
class NoAction:
    pass


@dataclass(frozen=True)
class Action:
    name: str
    value: str | None = None


ActionCommand = NoAction | Action


@dataclass(frozen=True)
class ParsedReply:
    text: str
    command: ActionCommand

    @property
    def action(self) -> Action | None:
        return self.command if isinstance(self.command, Action) else None


def parse_reply(raw: str | None) -> ParsedReply:
    """Split a classifier reply into display text and its action command."""
    source = raw or ""
    match = ACTION_TOKEN_RE.search(source)
    if not match:
        return ParsedReply(_clean_text(source), NoAction())

    name = match.group(1)
    value = match.group(2)
    end = match.end()
    if value is not None:
        value_start = match.start(2)
        line_end = source.find("\n", end)
        if line_end < 0:
            line_end = len(source)
        rest = source[end:line_end]
        if rest.strip() and "ACTION:" not in rest:
            end = line_end
        value = source[value_start:end]
        sentence_break = _SENTENCE_BREAK_RE.search(value)
        if sentence_break:
            end = value_start + sentence_break.end()
            value = value[: sentence_break.start()]
        value = value.strip().rstrip(_TRAILING_VALUE_PUNCTUATION).strip() or None

    before = source[: match.start()].rstrip()
    after = source[end:].lstrip()
    text = f"{before} {after}" if before and after else before or after
    return ParsedReply(_clean_text(text), Action(name, value))


def strip_action_tokens(text: str) -> str:
    return _clean_text(text)


def _clean_text(text: str) -> str:
    cleaned = ACTION_TOKEN_RE.sub("", text)
    cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
    cleaned = re.sub(r"[ \t]+\n", "\n", cleaned)
    return cleaned.strip()


_STRONG_CLOSING_PHRASES = (
    "bye",
    "goodbye",
    "good bye",
    "bye bye",
    "shut up",
    "go away",
    "that's all",
    "thats all",
    "thanks bye",
    "thank you bye",
    "see you",
    "see ya",
)
_CLOSING_WORDS = ("close", "exit", "stop", "later", "quit")
# Closing words are ignored when the utterance is about ChargeNet itself.
_CLOSING_VETO_WORDS = frozenset(
    {
        "book",
        "booking",
        "bookings",
        "charger",
        "chargers",
        "charging",
        "map",
        "route",
        "session",
        "station",
        "stations",
        "tab",
        "trip",
    }
)
_CLOSING_VETO_PHRASES = ("close to", "close by")


def normalize_closing_text(text: str | None) -> str:
    lowered = (text or "").strip().lower()
    if not lowered:
        return ""
    lowered = lowered.replace("’", "'")
    lowered = re.sub(r"[^\w\s']", " ", lowered)
    lowered = lowered.replace("'", "")
    return re.sub(r"\s+", " ", lowered).strip()


CLOSING_PHRASES: tuple[str, ...] = tuple(
    dict.fromkeys(normalize_closing_text(phrase) for phrase in _STRONG_CLOSING_PHRASES)
)


def is_closing_phrase(text: str | None) -> bool:
    """True when the utterance asks Gennie to close the conversation."""
    normalized = normalize_closing_text(text)
    if not normalized:
        return False
    padded = f" {normalized} "
    if any(f" {phrase} " in padded for phrase in CLOSING_PHRASES):
        return True
    words = set(normalized.split())
    if not words.intersection(_CLOSING_WORDS):
        return False
    if words & _CLOSING_VETO_WORDS or any(f" {phrase} " in padded for phrase in _CLOSING_VETO_PHRASES):
        return False
    return True
