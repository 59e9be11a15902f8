"""Conversation session state."""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

Sender = Literal["user", "assistant", "system"]

_MESSAGE_IDS = itertools.count(1)


class SessionState(str, Enum):
    CLOSED = "closed"
    OPENING = "opening"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"
    CLOSING = "closing"


@dataclass(frozen=True)
class Message:
    id: int
    text: str
    sender: Sender
    timestamp: float

    @classmethod
    def create(cls, text: str, sender: Sender) -> Message:
        return cls(next(_MESSAGE_IDS), text, sender, time.time())

    def to_payload(self) -> dict[str, Any]:
        return {"id": self.id, "text": self.text, "sender": self.sender, "timestamp": self.timestamp}


@dataclass
class Session:
    """One open conversation; exists from wake/open until close."""

    state: SessionState = SessionState.OPENING
    transcript_buffer: list[str] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    is_speaking: bool = False
    is_capturing: bool = False
    closing_requested: bool = False

    def add_message(self, text: str, sender: Sender) -> Message:
        message = Message.create(text, sender)
        self.messages.append(message)
        return message

    def take_transcript(self) -> str:
        text = " ".join(part.strip() for part in self.transcript_buffer if part.strip())
        self.transcript_buffer.clear()
        return text

    def clear(self) -> None:
        self.transcript_buffer.clear()
        self.messages.clear()
        self.closing_requested = False
