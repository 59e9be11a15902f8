"""Navigation requests sent to the kiosk router."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

LOGGER = logging.getLogger("gennie-assistant.navigation")

NavigationKind = Literal["route", "tab"]


def dashboard_path(role: str) -> str:
    return "/host-dashboard" if role == "host" else "/dashboard"


@dataclass(frozen=True)
class NavigationTarget:
    """Where the UI should go: another page (route) or a dashboard tab."""

    kind: NavigationKind
    path: str
    tab: str | None = None

    @classmethod
    def route(cls, path: str) -> NavigationTarget:
        return cls("route", path)

    @classmethod
    def dashboard_tab(cls, role: str, tab: str) -> NavigationTarget:
        return cls("tab", f"{dashboard_path(role)}/{tab}", tab)


@dataclass(frozen=True)
class NavigationEvent:
    kind: NavigationKind
    path: str
    tab: str | None
    nonce: str
    timestamp: float

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "path": self.path,
            "tab": self.tab,
            "nonce": self.nonce,
            "timestamp": self.timestamp,
        }


NavigationListener = Callable[[NavigationEvent], None]


class Navigator:
    """Turns navigation targets into uniquely identified router events.

    Every dispatch carries a fresh nonce, so navigating to the page that is
    already showing is still observable by the router.
    """

    def __init__(
        self,
        publish: NavigationListener | None = None,
        *,
        nonce_factory: Callable[[], str] | None = None,
        clock: Callable[[], float] = time.time,
        logger: logging.Logger | None = None,
    ) -> None:
        self._listeners: list[NavigationListener] = []
        if publish is not None:
            self._listeners.append(publish)
        self._nonce_factory = nonce_factory or (lambda: uuid.uuid4().hex)
        self._clock = clock
        self._logger = logger or LOGGER
        self._last_event: NavigationEvent | None = None

    @property
    def last_event(self) -> NavigationEvent | None:
        return self._last_event

    def add_listener(self, listener: NavigationListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: NavigationListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def navigate(self, target: NavigationTarget) -> NavigationEvent:
        event = NavigationEvent(
            kind=target.kind,
            path=target.path,
            tab=target.tab,
            nonce=self._nonce_factory(),
            timestamp=self._clock(),
        )
        self._last_event = event
        self._logger.info("Navigating (%s) to %s", event.kind, event.path)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self._logger.exception("Navigation listener failed for %s", event.path)
        return event
