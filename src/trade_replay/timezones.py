"""Flat-offset conversion between the report clock and the price-feed clock.

Report timestamps are naive datetimes holding the wall-clock fields exactly as
printed in the export. The price feed speaks UTC. The offset is whatever the
user declares for the report, not a political timezone, so there is no
daylight-saving handling and no timezone database lookup.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Iterable

from trade_replay.models import MarketCandle

MIN_OFFSET_HOURS = -12.0
MAX_OFFSET_HOURS = 14.0


def validate_offset(offset_hours: float) -> float:
    value = float(offset_hours)
    if value != value or value < MIN_OFFSET_HOURS or value > MAX_OFFSET_HOURS:
        raise ValueError(f"Timezone offset must be within [-12, 14] hours: {offset_hours}")
    return value


def to_feed_clock(local: datetime, offset_hours: float) -> datetime:
    shift = _offset_delta(offset_hours)
    wall = local.replace(tzinfo=None)
    return (wall - shift).replace(tzinfo=timezone.utc)


def to_local_clock(feed: datetime, offset_hours: float) -> datetime:
    shift = _offset_delta(offset_hours)
    if feed.tzinfo is not None:
        feed = feed.astimezone(timezone.utc).replace(tzinfo=None)
    return feed + shift


def shift_candles(candles: Iterable[MarketCandle], offset_hours: float) -> list[MarketCandle]:
    return [replace(candle, time=to_local_clock(candle.time, offset_hours)) for candle in candles]


def timezone_label(offset_hours: float) -> str:
    value = validate_offset(offset_hours)
    if value == 0:
        return "GMT+0 (UTC)"
    text = f"{value:g}"
    sign = "+" if value > 0 else ""
    return f"GMT{sign}{text}"


def supported_offsets() -> list[float]:
    return [float(hour) for hour in range(int(MIN_OFFSET_HOURS), int(MAX_OFFSET_HOURS) + 1)]


def _offset_delta(offset_hours: float) -> timedelta:
    # Same delta both ways, so microsecond rounding cancels on the round trip.
    return timedelta(hours=validate_offset(offset_hours))
