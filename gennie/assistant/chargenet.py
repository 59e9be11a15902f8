"""Async client for the ChargeNet REST API (chargers and bookings)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from .config import ChargeNetConfig


class ChargeNetError(RuntimeError):
    """Generic ChargeNet API failure."""


class ChargeNetAuthError(ChargeNetError):
    """Raised when the API returns 401/403."""


@dataclass(frozen=True)
class Charger:
    id: str
    name: str
    location: str
    power: float = 0.0
    price: float = 0.0
    available: bool = False
    rating: float | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Charger:
        return cls(
            id=str(payload.get("_id") or payload.get("id") or ""),
            name=str(payload.get("name") or "").strip(),
            location=str(payload.get("location") or "").strip(),
            power=_as_float(payload.get("power")),
            price=_as_float(payload.get("price")),
            available=bool(payload.get("available")),
            rating=_as_float(payload.get("rating")) if payload.get("rating") is not None else None,
        )


@dataclass(frozen=True)
class Booking:
    id: str
    status: str
    duration: float = 1.0
    amount: float = 0.0
    charger_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in {"pending", "active"}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Booking:
        charger = payload.get("charger")
        charger_id = charger.get("_id") if isinstance(charger, dict) else charger
        return cls(
            id=str(payload.get("_id") or payload.get("id") or ""),
            status=str(payload.get("status") or "").strip().lower(),
            duration=_as_float(payload.get("duration")) or 1.0,
            amount=_as_float(payload.get("amount")),
            charger_id=str(charger_id) if charger_id else None,
        )


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass(slots=True)
class ChargeNetClient:
    config: ChargeNetConfig
    transport: httpx.AsyncBaseTransport | None = field(default=None, repr=False)
    _client: httpx.AsyncClient = field(init=False, repr=False)
    _closed: bool = field(init=False, default=True, repr=False)

    def __post_init__(self) -> None:
        if not self.config.base_url:
            raise ValueError("ChargeNet API base URL is not configured")
        headers = {"Content-Type": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=headers,
            timeout=self.config.timeout,
            transport=self.transport,
        )
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._client.aclose()

    async def list_chargers(self) -> list[Charger]:
        payload = await self._request("GET", "/api/chargers")
        return [Charger.from_payload(item) for item in _items(payload, "chargers")]

    async def list_host_chargers(self) -> list[Charger]:
        payload = await self._request("GET", "/api/chargers/host/mine")
        return [Charger.from_payload(item) for item in _items(payload, "chargers")]

    async def toggle_charger(self, charger_id: str) -> None:
        await self._request("PATCH", f"/api/chargers/{charger_id}/toggle")

    async def driver_bookings(self) -> list[Booking]:
        payload = await self._request("GET", "/api/bookings/driver")
        return [Booking.from_payload(item) for item in _items(payload, "bookings")]

    async def host_personal_bookings(self) -> list[Booking]:
        payload = await self._request("GET", "/api/bookings/host/personal")
        return [Booking.from_payload(item) for item in _items(payload, "bookings")]

    async def cancel_booking(self, booking_id: str) -> None:
        await self._request("PATCH", f"/api/bookings/{booking_id}/cancel")

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            raise ChargeNetError(f"Failed to contact ChargeNet: {exc}") from exc
        if response.status_code in (401, 403):
            raise ChargeNetAuthError("ChargeNet rejected the token")
        if response.status_code >= 400:
            raise ChargeNetError(f"ChargeNet error {response.status_code}: {response.text}")
        if response.headers.get("content-type", "").startswith("application/json"):
            try:
                return response.json()
            except ValueError as exc:
                raise ChargeNetError(f"ChargeNet returned malformed JSON for {method} {path}") from exc
        return response.text


def _items(payload: Any, key: str) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get(key) or payload.get("data") or []
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    return []
