"""Action table mapping ACTION tokens to spoken replies, navigation and API calls."""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Literal
from urllib.parse import quote

from .chargenet import Booking, Charger, ChargeNetClient, ChargeNetError
from .errors import ActionExecutionFailure
from .intents import Action
from .navigation import NavigationTarget

LOGGER = logging.getLogger("gennie-assistant.actions")

DEFAULT_APOLOGY = "Sorry, I couldn't do that right now. Please try again from the app."
CO2_KG_PER_KM = 0.12


@dataclass(frozen=True)
class VoiceActionContext:
    user_id: str
    user_name: str
    role: Literal["driver", "host"]
    current_route: str = "/"

    @property
    def is_host(self) -> bool:
        return self.role == "host"


@dataclass(frozen=True)
class ActionResult:
    spoken: str
    navigation: NavigationTarget | None = None
    data: Any = None
    refused: bool = False


ActionHandler = Callable[[str | None, VoiceActionContext, ChargeNetClient | None], Awaitable[ActionResult]]


@dataclass(frozen=True)
class ActionDefinition:
    name: str
    description: str
    handler: ActionHandler
    host_only: bool = False
    refusal: str | None = None
    apology: str = DEFAULT_APOLOGY
    value_hint: str | None = None

    def prompt_line(self) -> str:
        token = f"ACTION:{self.name}" + (f":{self.value_hint}" if self.value_hint else "")
        scope = " (hosts only)" if self.host_only else ""
        return f"{token} - {self.description}{scope}"


class VoiceActionEngine:
    """Executes parsed actions against the action table.

    Unknown actions return ``None`` so the reply stays conversational only.
    """

    def __init__(
        self,
        chargenet: ChargeNetClient | None = None,
        definitions: Iterable[ActionDefinition] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._chargenet = chargenet
        self._logger = logger or LOGGER
        self._definitions = {
            definition.name: definition for definition in (definitions or DEFAULT_ACTION_DEFINITIONS)
        }

    def has_action(self, name: str) -> bool:
        return name in self._definitions

    def definitions(self) -> list[ActionDefinition]:
        return list(self._definitions.values())

    def describe_for_prompt(self) -> str:
        return "\n".join(definition.prompt_line() for definition in self._definitions.values())

    async def execute(self, action: Action, context: VoiceActionContext) -> ActionResult | None:
        definition = self._definitions.get(action.name)
        if definition is None:
            self._logger.info("Ignoring unknown action %s", action.name)
            return None
        if definition.host_only and not context.is_host:
            self._logger.info("Refusing host-only action %s for %s", action.name, context.role)
            return ActionResult(definition.refusal or "That's only available to hosts.", refused=True)
        self._logger.debug("Executing action %s (value=%s)", action.name, action.value)
        try:
            return await definition.handler(action.value, context, self._chargenet)
        except ActionExecutionFailure as exc:
            self._logger.warning("Action %s failed: %s", action.name, exc)
            return ActionResult(definition.apology)


def find_best_charger_match(chargers: Iterable[Charger], query: str) -> Charger | None:
    """Exact name, then name contains, then location contains, then all words."""
    candidates = list(chargers)
    needle = query.strip().lower()
    if not needle:
        return None
    for charger in candidates:
        if charger.name.lower() == needle:
            return charger
    for charger in candidates:
        if needle in charger.name.lower():
            return charger
    for charger in candidates:
        if needle in charger.location.lower():
            return charger
    words = needle.split()
    for charger in candidates:
        combined = f"{charger.name} {charger.location}".lower()
        if all(word in combined for word in words):
            return charger
    return None


def _require_client(client: ChargeNetClient | None) -> ChargeNetClient:
    if client is None:
        raise ActionExecutionFailure("ChargeNet API is not configured")
    return client


async def _call(awaitable: Awaitable[Any]) -> Any:
    try:
        return await awaitable
    except ChargeNetError as exc:
        raise ActionExecutionFailure(str(exc)) from exc


def _number(value: float) -> str:
    return f"{value:g}"


def _tab(context: VoiceActionContext, tab: str) -> NavigationTarget:
    return NavigationTarget.dashboard_tab(context.role, tab)


def _static(spoken: str, *, route: str | None = None, tab: str | None = None) -> ActionHandler:
    async def _handler(
        value: str | None, context: VoiceActionContext, client: ChargeNetClient | None
    ) -> ActionResult:
        if route:
            return ActionResult(spoken, NavigationTarget.route(route))
        if tab:
            return ActionResult(spoken, _tab(context, tab))
        return ActionResult(spoken)

    return _handler


async def _my_bookings(value: str | None, context: VoiceActionContext, client: ChargeNetClient | None) -> ActionResult:
    if context.is_host:
        return ActionResult("Here are your personal bookings as a driver.", _tab(context, "my-bookings"))
    return ActionResult("Here are your bookings.", _tab(context, "bookings"))


async def _plan_trip(value: str | None, context: VoiceActionContext, client: ChargeNetClient | None) -> ActionResult:
    if value and "|" in value:
        origin, destination = (part.strip() for part in value.split("|", 1))
        if origin and destination:
            path = (
                "/chargers?trip=1&startType=custom"
                f"&start={quote(origin, safe='')}&dest={quote(destination, safe='')}"
            )
            return ActionResult(
                f"Planning your trip from {origin} to {destination}. "
                "Let me find charging stations along the route!",
                NavigationTarget.route(path),
            )
    return ActionResult(
        "Opening the trip planner. Tell me your start and destination!",
        _tab(context, "trip-planner"),
    )


async def _book_charger(value: str | None, context: VoiceActionContext, client: ChargeNetClient | None) -> ActionResult:
    if not value:
        return ActionResult(
            "Opening the charger map. Tell me which charger you'd like to book!",
            NavigationTarget.route("/chargers"),
        )
    chargers = await _call(_require_client(client).list_chargers())
    match = find_best_charger_match(chargers, value)
    if match is None:
        return ActionResult(
            f"I couldn't find a charger matching {value}. Let me show all chargers so you can pick one.",
            NavigationTarget.route("/chargers"),
        )
    availability = "Available now!" if match.available else "Currently busy."
    return ActionResult(
        f"Found {match.name} at {match.location}. It's {_number(match.power)} kilowatts, "
        f"{_number(match.price)} rupees per unit. {availability} Taking you to book it.",
        NavigationTarget.route(f"/booking/{match.id}"),
        data=match,
    )


async def _bookings_for(context: VoiceActionContext, client: ChargeNetClient) -> list[Booking]:
    if context.is_host:
        return await _call(client.host_personal_bookings())
    return await _call(client.driver_bookings())


async def _cancel_booking(
    value: str | None, context: VoiceActionContext, client: ChargeNetClient | None
) -> ActionResult:
    api = _require_client(client)
    active = [booking for booking in await _bookings_for(context, api) if booking.is_active]
    if not active:
        return ActionResult("You don't have any active bookings to cancel.")
    target = next((booking for booking in active if value and booking.id == value), active[0])
    await _call(api.cancel_booking(target.id))
    spoken = "Booking cancelled successfully!"
    remaining = len(active) - 1
    if remaining:
        spoken += f" You still have {remaining} other active booking{'s' if remaining > 1 else ''}."
    return ActionResult(spoken, _tab(context, "bookings"), data=target)


async def _booking_status(
    value: str | None, context: VoiceActionContext, client: ChargeNetClient | None
) -> ActionResult:
    active = [booking for booking in await _bookings_for(context, _require_client(client)) if booking.is_active]
    if not active:
        return ActionResult("You don't have any active bookings right now.")
    latest = active[0]
    hours = latest.duration or 1
    return ActionResult(
        f"You have {len(active)} active booking{'s' if len(active) > 1 else ''}. "
        f"Your latest is {latest.status} for {_number(hours)} hour{'s' if hours > 1 else ''}, "
        f"costing {_number(latest.amount)} rupees.",
        data=latest,
    )


async def _add_distance(value: str | None, context: VoiceActionContext, client: ChargeNetClient | None) -> ActionResult:
    match = re.match(r"\s*(\d+)", value or "")
    km = int(match.group(1)) if match else 0
    if km <= 0:
        return ActionResult("How many kilometers did you drive? Just tell me the number.")
    saved = km * CO2_KG_PER_KM
    return ActionResult(
        f"Great! {km} kilometers added. That's about {saved:.1f} kg of CO2 saved, earning you carbon credits!",
        _tab(context, "carbon-trading"),
        data={"km": km, "co2_kg": round(saved, 2)},
    )


async def _host_bookings(value: str | None, context: VoiceActionContext, client: ChargeNetClient | None) -> ActionResult:
    if not context.is_host:
        return ActionResult(
            "That's for hosts. Let me show your driver bookings instead.",
            _tab(context, "bookings"),
            refused=True,
        )
    return ActionResult("Here are the bookings on your chargers.", _tab(context, "bookings"))


async def _list_chargers(value: str | None, context: VoiceActionContext, client: ChargeNetClient | None) -> ActionResult:
    chargers = await _call(_require_client(client).list_chargers())
    available = [charger for charger in chargers if charger.available]
    if not available:
        return ActionResult("No chargers are currently available. Check back soon!")
    top = available[:3]
    listing = ". ".join(
        f"{index}. {charger.name} at {charger.location}, {_number(charger.power)} kilowatts, "
        f"{_number(charger.price)} rupees per unit"
        + (f", rated {_number(charger.rating)} stars" if charger.rating is not None else "")
        for index, charger in enumerate(top, start=1)
    )
    return ActionResult(
        f"I found {len(available)} available chargers. Here are the top ones: {listing}. "
        "Want me to book any of these?",
        data=top,
    )


async def _charger_status(
    value: str | None, context: VoiceActionContext, client: ChargeNetClient | None
) -> ActionResult:
    chargers = await _call(_require_client(client).list_chargers())
    total = len(chargers)
    available = sum(1 for charger in chargers if charger.available)
    return ActionResult(
        f"There are {total} chargers in the network. "
        f"{available} are available right now and {total - available} are busy.",
        data={"total": total, "available": available},
    )


async def _toggle_charger(
    value: str | None, context: VoiceActionContext, client: ChargeNetClient | None
) -> ActionResult:
    api = _require_client(client)
    chargers = await _call(api.list_host_chargers())
    if not chargers:
        return ActionResult("You don't have any chargers listed yet.", _tab(context, "chargers"))
    query = (value or "").strip().lower()
    specific = bool(query) and query != "all"
    match: Charger | None = None
    if specific:
        match = next(
            (charger for charger in chargers if query in charger.name.lower() or query in charger.location.lower()),
            None,
        )
    if match is None and len(chargers) == 1:
        match = chargers[0]
    if match is not None:
        await _call(api.toggle_charger(match.id))
        status = "offline" if match.available else "online"
        return ActionResult(f"Done! {match.name} is now {status}.", _tab(context, "chargers"), data=match)
    if specific:
        return ActionResult(
            f"I couldn't find a charger matching {value}. Let me show your chargers.",
            _tab(context, "chargers"),
        )
    names = ", ".join(charger.name for charger in chargers)
    return ActionResult(
        f"You have {len(chargers)} chargers: {names}. Which one should I toggle?",
        _tab(context, "chargers"),
    )


DEFAULT_ACTION_DEFINITIONS: tuple[ActionDefinition, ...] = (
    ActionDefinition(
        "FIND_CHARGERS",
        "open the charger map",
        _static("Opening the charger map for you! Let me find available chargers nearby.", route="/chargers"),
    ),
    ActionDefinition("PROFILE", "open the user's profile", _static("Opening your profile.", route="/profile")),
    ActionDefinition("DASHBOARD", "go to the dashboard home", _static("Taking you to your dashboard.", tab="overview")),
    ActionDefinition("VIEW_BOOKINGS", "show bookings", _static("Here are your bookings.", tab="bookings")),
    ActionDefinition("MY_BOOKINGS", "show the user's own bookings", _my_bookings),
    ActionDefinition("PLAN_TRIP", "plan a trip with charging stops", _plan_trip, value_hint="from|to"),
    ActionDefinition(
        "BOOK_CHARGER",
        "book a charger by name or location",
        _book_charger,
        apology="I'm having trouble fetching chargers right now. Please pick one from the charger map.",
        value_hint="charger name",
    ),
    ActionDefinition(
        "CANCEL_BOOKING",
        "cancel the latest active booking",
        _cancel_booking,
        apology="I couldn't cancel the booking. Please try from the bookings page.",
        value_hint="booking id",
    ),
    ActionDefinition(
        "BOOKING_STATUS",
        "read out active bookings",
        _booking_status,
        apology="I couldn't fetch your bookings right now.",
    ),
    ActionDefinition(
        "EMERGENCY",
        "emergency roadside rescue",
        _static(
            "Emergency mode activated! I'm finding rescue help near you right now. Stay safe!",
            tab="emergency-rescue",
        ),
    ),
    ActionDefinition(
        "URGENT_BOOKING",
        "urgent booking of the fastest available charger",
        _static("Opening urgent booking! I'll find you the fastest available charger.", tab="urgent"),
    ),
    ActionDefinition(
        "CARBON_CREDITS",
        "carbon credit trading",
        _static("Opening carbon credits trading. You can sell your eco miles here!", tab="carbon-trading"),
    ),
    ActionDefinition("ADD_DISTANCE", "log kilometers driven", _add_distance, value_hint="km"),
    ActionDefinition("REWARDS", "rewards exchange", _static("Opening your rewards exchange!", tab="rewards")),
    ActionDefinition(
        "ANALYTICS",
        "charging analytics and usage",
        _static("Here's your charging analytics and usage data.", tab="analytics"),
    ),
    ActionDefinition("SUPPORT", "help and support", _static("Opening support. How can I help you?", tab="support")),
    ActionDefinition(
        "REQUEST_CHARGER",
        "request a charger installation",
        _static(
            "Opening the charger request form. You can request a charger installation in your area!",
            tab="request-charger",
        ),
    ),
    ActionDefinition(
        "LIST_CHARGERS",
        "read out available chargers",
        _list_chargers,
        apology="I'm having trouble fetching chargers right now.",
    ),
    ActionDefinition(
        "CHARGER_STATUS",
        "network availability summary",
        _charger_status,
        apology="I couldn't fetch charger status right now.",
    ),
    ActionDefinition(
        "ADD_CHARGER",
        "add a new charger listing",
        _static("Opening the add charger form. Fill in your charger details!", tab="chargers"),
        host_only=True,
        refusal="Only hosts can add chargers. Would you like to switch to a host account?",
    ),
    ActionDefinition(
        "MANAGE_CHARGERS",
        "manage listed chargers",
        _static("Here are your listed chargers.", tab="chargers"),
        host_only=True,
        refusal="Only hosts can manage chargers.",
    ),
    ActionDefinition(
        "RESCUE_REQUESTS",
        "incoming rescue requests from drivers",
        _static("Here are the incoming rescue requests from nearby drivers.", tab="rescue-requests"),
        host_only=True,
        refusal="Rescue requests are for hosts. As a driver, you can request emergency rescue instead.",
    ),
    ActionDefinition("HOST_BOOKINGS", "bookings on the host's chargers", _host_bookings),
    ActionDefinition(
        "TOGGLE_CHARGER",
        "switch a charger online or offline",
        _toggle_charger,
        host_only=True,
        refusal="Only hosts can toggle charger availability.",
        apology="I couldn't toggle that charger. Please try from the dashboard.",
        value_hint="charger name",
    ),
)
