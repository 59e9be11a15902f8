"""Tests for navigation events (gennie/assistant/navigation.py)."""

from __future__ import annotations

from itertools import count

from gennie.assistant.navigation import NavigationTarget, Navigator, dashboard_path


def test_dashboard_path_by_role():
    assert dashboard_path("host") == "/host-dashboard"
    assert dashboard_path("driver") == "/dashboard"


def test_dashboard_tab_target():
    target = NavigationTarget.dashboard_tab("host", "rescue-requests")
    assert target.kind == "tab"
    assert target.path == "/host-dashboard/rescue-requests"
    assert target.tab == "rescue-requests"


def test_repeated_navigation_is_distinguishable():
    seen = []
    navigator = Navigator(seen.append)
    target = NavigationTarget.route("/chargers")
    first = navigator.navigate(target)
    second = navigator.navigate(target)
    assert first.path == second.path
    assert first.nonce != second.nonce
    assert seen == [first, second]
    assert navigator.last_event is second


def test_payload_and_listeners():
    ids = count(1)
    navigator = Navigator(nonce_factory=lambda: f"n{next(ids)}", clock=lambda: 100.0)
    seen = []
    navigator.add_listener(seen.append)
    event = navigator.navigate(NavigationTarget.dashboard_tab("driver", "bookings"))
    assert event.to_payload() == {
        "kind": "tab",
        "path": "/dashboard/bookings",
        "tab": "bookings",
        "nonce": "n1",
        "timestamp": 100.0,
    }
    navigator.remove_listener(seen.append)
    navigator.navigate(NavigationTarget.route("/profile"))
    assert len(seen) == 1


def test_failing_listener_does_not_block_others():
    seen = []

    def broken(event):
        raise RuntimeError("router gone")

    navigator = Navigator(broken)
    navigator.add_listener(seen.append)
    navigator.navigate(NavigationTarget.route("/profile"))
    assert len(seen) == 1
