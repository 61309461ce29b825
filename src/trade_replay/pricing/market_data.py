from __future__ import annotations

import asyncio
import http.client
import json
import logging
import math
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Mapping

from trade_replay.errors import DIAG_PRICE_FEED_UNAVAILABLE, PriceFeedError
from trade_replay.models import Diagnostic, MarketCandle

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://test.neuix.host/api"
DEFAULT_ENDPOINT = "/market-data/get"
# 15 minute candles line up with the synthetic replay interval.
DEFAULT_TIMEFRAME = "M15"
DEFAULT_TIMEOUT_SECONDS = 30.0
ENV_PREFIX = "MARKET_DATA_"


@dataclass(frozen=True)
class PriceFeedConfig:
    base_url: str = DEFAULT_BASE_URL
    endpoint: str = DEFAULT_ENDPOINT
    timeframe: str = DEFAULT_TIMEFRAME
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "PriceFeedConfig":
        base_url = env.get(f"{ENV_PREFIX}BASE_URL", "").strip() or DEFAULT_BASE_URL
        endpoint = env.get(f"{ENV_PREFIX}ENDPOINT", "").strip() or DEFAULT_ENDPOINT
        timeframe = env.get(f"{ENV_PREFIX}TIMEFRAME", "").strip() or DEFAULT_TIMEFRAME
        timeout_seconds = _to_float(env.get(f"{ENV_PREFIX}TIMEOUT_SECONDS"), default=DEFAULT_TIMEOUT_SECONDS)
        if timeout_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}TIMEOUT_SECONDS must be positive.")
        return cls(
            base_url=base_url.rstrip("/"),
            endpoint=endpoint,
            timeframe=timeframe,
            timeout_seconds=timeout_seconds,
        )

    @classmethod
    def from_settings(cls, settings: Any) -> "PriceFeedConfig":
        return cls(
            base_url=str(settings.base_url).rstrip("/"),
            endpoint=str(settings.endpoint),
            timeframe=str(settings.timeframe),
            timeout_seconds=float(settings.timeout_seconds),
        )


class MarketDataClient:
    def __init__(self, config: PriceFeedConfig | None = None) -> None:
        self._config = config or PriceFeedConfig()

    @property
    def config(self) -> PriceFeedConfig:
        return self._config

    def fetch_candles(self, symbol: str, start: datetime, end: datetime) -> list[MarketCandle]:
        """Fetch candles for ``symbol`` covering ``start``..``end`` on the feed clock (UTC).

        The request is by calendar date and the upper date is pushed one day
        out so the final day arrives complete. Returned times stay in UTC.
        """
        if end < start:
            raise ValueError("end must not precede start")
        url = self.build_url(symbol, start, end)
        logger.debug("Requesting candles for %s: %s", symbol, url)
        payload = _fetch_payload(url, timeout_seconds=self._config.timeout_seconds)
        candles = decode_candles(payload)
        logger.info("Received %d candles for %s", len(candles), symbol)
        return candles

    def build_url(self, symbol: str, start: datetime, end: datetime) -> str:
        params = {
            "from_date": _utc_date(start).isoformat(),
            "to_date": (_utc_date(end) + timedelta(days=1)).isoformat(),
            "timeframe": self._config.timeframe,
            "symbols": symbol,
        }
        return _build_url(self._config.base_url, self._config.endpoint, params)


async def fetch_candles_async(
    client: MarketDataClient, symbol: str, start: datetime, end: datetime
) -> tuple[list[MarketCandle], list[Diagnostic]]:
    try:
        candles = await asyncio.to_thread(client.fetch_candles, symbol, start, end)
    except PriceFeedError as exc:
        logger.warning("Price feed unavailable for %s: %s", symbol, exc)
        diagnostic = Diagnostic(
            kind=DIAG_PRICE_FEED_UNAVAILABLE,
            message=str(exc),
            symbol=symbol,
            context={"start": start.isoformat(), "end": end.isoformat()},
        )
        return [], [diagnostic]
    return candles, []


def decode_candles(payload: Any) -> list[MarketCandle]:
    """Decode NDJSON text, a JSON array, or a ``{"data": ...}`` envelope."""
    records = _records_from_payload(payload)
    candles: list[MarketCandle] = []
    skipped = 0
    for record in records:
        candle = _parse_candle(record)
        if candle is None:
            skipped += 1
            continue
        candles.append(candle)
    if skipped:
        logger.debug("Skipped %d undecodable candle records", skipped)
    if records and not candles:
        raise PriceFeedError(f"No decodable candles in {len(records)} price records")
    candles.sort(key=lambda candle: candle.time)
    return candles


def _records_from_payload(payload: Any) -> list[Any]:
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        data = payload.get("data")
        if isinstance(data, (list, str, bytes, bytearray)):
            return _records_from_payload(data)
        if _looks_like_candle(payload):
            return [payload]
        raise PriceFeedError(f"Unrecognised price response: {_describe_payload(payload)}")
    if isinstance(payload, str):
        return _records_from_text(payload)
    raise PriceFeedError(f"Unrecognised price response: {_describe_payload(payload)}")


def _records_from_text(text: str) -> list[Any]:
    stripped = text.strip()
    if not stripped:
        return []
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, (list, Mapping)):
        return _records_from_payload(parsed)
    records: list[Any] = []
    for line in stripped.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON candle line: %.80s", line)
    if not records:
        raise PriceFeedError(f"Price response is not JSON or NDJSON: {stripped[:80]!r}")
    return records


def _parse_candle(record: Any) -> MarketCandle | None:
    if not isinstance(record, Mapping):
        return None
    timestamp = _pick(record, "time", "timestamp", "datetime", "t")
    close = _pick(record, "close", "c")
    if timestamp is None or close is None:
        return None
    try:
        close_value = float(close)
        if not math.isfinite(close_value):
            return None
        return MarketCandle(
            time=_parse_timestamp(timestamp),
            close=close_value,
            open=_optional_float(_pick(record, "open", "o")),
            high=_optional_float(_pick(record, "high", "h")),
            low=_optional_float(_pick(record, "low", "l")),
            volume=_optional_float(_pick(record, "volume", "tick_volume", "v")),
        )
    except (TypeError, ValueError, OverflowError, OSError):
        # Epoch values outside the platform range fail in fromtimestamp.
        return None


def _build_url(base_url: str, endpoint: str, params: Mapping[str, str]) -> str:
    path = endpoint if endpoint.startswith("/") else f"/{endpoint}"
    query = urllib.parse.urlencode(params)
    return f"{base_url.rstrip('/')}{path}?{query}"


def _fetch_payload(url: str, timeout_seconds: float) -> Any:
    request = urllib.request.Request(
        url, headers={"Accept": "application/json", "Content-Type": "application/json"}
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            payload = response.read()
    except urllib.error.HTTPError as exc:
        raise PriceFeedError(f"Price endpoint returned HTTP {exc.code}: {url}") from exc
    except urllib.error.URLError as exc:
        raise PriceFeedError(f"Price endpoint unreachable: {exc.reason}") from exc
    except http.client.HTTPException as exc:
        raise PriceFeedError(f"Price response truncated or malformed: {exc!r}") from exc
    except (TimeoutError, OSError) as exc:
        raise PriceFeedError(f"Price request failed: {exc}") from exc
    if not payload:
        raise PriceFeedError(f"Empty response from price endpoint: {url}")
    text = payload.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        # Newline-delimited records are returned as text and split later.
        return text


def _utc_date(value: datetime) -> date:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] not in (None, ""):
            return raw[key]
    return None


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return _timestamp_from_number(float(value))
    else:
        text = str(value).strip()
        try:
            return _timestamp_from_number(float(text))
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text.replace(".", "-", 2) if text[4:5] == "." else text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _timestamp_from_number(value: float) -> datetime:
    seconds = value / 1000.0 if value > 1e12 else value
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


def _to_float(value: Any, default: float) -> float:
    if value in (None, ""):
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid numeric setting: {value!r}") from exc


def _looks_like_candle(payload: Mapping[str, Any]) -> bool:
    return any(key in payload for key in ("time", "timestamp", "t")) and any(
        key in payload for key in ("close", "c")
    )


def _describe_payload(payload: Any) -> str:
    if isinstance(payload, Mapping):
        return f"response_keys={sorted(payload.keys())}"
    if isinstance(payload, list):
        return f"response_list_len={len(payload)}"
    return f"response_type={type(payload).__name__}"
