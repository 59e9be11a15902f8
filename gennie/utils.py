"""
Helpers shared across the Gennie assistant

- Environment parsing with defaults and range clamping (parse_bool, parse_int,
  parse_float, split_csv)
- await_with_timeout for optional deadlines
- compute_rms for microphone level and voice activity
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import numpy as np

N = TypeVar("N", int, float)

_TRUTHY = frozenset({"1", "true", "yes", "on", "y"})
_FALSY = frozenset({"0", "false", "no", "off", "n"})


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Env-style boolean; unrecognised words keep ``default``."""
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    return default


def _parse_number(value: str | None, default: N, cast: Callable[[str], N], minimum: N | None, maximum: N | None) -> N:
    result = default
    if value is not None and value.strip():
        try:
            result = cast(value.strip())
        except ValueError:
            result = default
    if minimum is not None and result < minimum:
        result = minimum
    if maximum is not None and result > maximum:
        result = maximum
    return result


def parse_int(value: str | None, default: int, minimum: int | None = None, maximum: int | None = None) -> int:
    return _parse_number(value, default, int, minimum, maximum)


def parse_float(
    value: str | None, default: float, minimum: float | None = None, maximum: float | None = None
) -> float:
    return _parse_number(value, default, float, minimum, maximum)


def split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [part for part in (item.strip() for item in value.split(",")) if part]


async def await_with_timeout(awaitable: Awaitable[Any], timeout: float | None) -> Any:
    if timeout is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=timeout)


_RMS_DTYPES = {2: "<i2", 4: "<i4"}


def compute_rms(chunk: bytes, sample_width: int) -> int:
    """Root-mean-square amplitude of little-endian PCM, in sample units.

    8-bit PCM is unsigned and is re-centred on zero first.
    """
    if sample_width == 1:
        samples = np.frombuffer(chunk, dtype=np.uint8).astype(np.float64) - 128.0
    elif sample_width in _RMS_DTYPES:
        usable = len(chunk) - len(chunk) % sample_width
        samples = np.frombuffer(chunk[:usable], dtype=_RMS_DTYPES[sample_width]).astype(np.float64)
    else:
        return 0
    if samples.size == 0:
        return 0
    return int(np.sqrt(np.mean(samples * samples)))
