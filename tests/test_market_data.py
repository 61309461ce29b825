import http.client
import json
import math
import urllib.error
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from trade_replay.errors import DIAG_PRICE_FEED_UNAVAILABLE, PriceFeedError
from trade_replay.pricing.market_data import (
    DEFAULT_BASE_URL,
    MarketDataClient,
    PriceFeedConfig,
    decode_candles,
    fetch_candles_async,
)

URLOPEN = "trade_replay.pricing.market_data.urllib.request.urlopen"


def _response(body: bytes) -> MagicMock:
    response = MagicMock()
    response.__enter__.return_value.read.return_value = body
    return response


# ---------------------------------------------------------------------------
# Response decoding
# ---------------------------------------------------------------------------

class TestDecodeCandles:
    def test_ndjson_text_sorted_and_skips_bad_lines(self):
        payload = (
            '{"time": "2024-01-02T10:00:00", "close": 1.1, "symbol": "EURUSD"}\n'
            "not json\n"
            '{"time": "2024-01-02T09:45:00", "close": 1.0}\n'
            '{"time": "2024-01-02T10:15:00"}\n'
        )
        candles = decode_candles(payload)
        assert [candle.close for candle in candles] == [1.0, 1.1]
        assert candles[0].time == datetime(2024, 1, 2, 9, 45, tzinfo=timezone.utc)

    def test_json_array(self):
        candles = decode_candles([{"time": "2024-01-02 10:00:00", "open": 1, "high": 2, "low": 0.5, "close": 1.5}])
        assert candles[0].high == 2.0
        assert candles[0].time.tzinfo is not None

    def test_data_envelope_with_list_or_text(self):
        record = {"time": "2024-01-02T10:00:00Z", "close": 1.5}
        assert len(decode_candles({"data": [record]})) == 1
        assert len(decode_candles({"data": json.dumps(record) + "\n" + json.dumps(record)})) == 2

    def test_epoch_milliseconds(self):
        [candle] = decode_candles([{"time": 1704189600000, "close": 2.0}])
        assert candle.time == datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc)

    def test_unrecognised_shape_raises(self):
        with pytest.raises(PriceFeedError):
            decode_candles({"error": "unknown symbol"})

    def test_empty_text(self):
        assert decode_candles("") == []

    @pytest.mark.parametrize("value", [1e20, "1e20", -1e20])
    def test_out_of_range_epoch_is_skipped(self, value):
        candles = decode_candles([{"time": value, "close": 1.1}, {"time": "2024-01-02T10:00:00Z", "close": 1.2}])
        assert [candle.close for candle in candles] == [1.2]

    def test_non_finite_close_is_skipped(self):
        payload = [
            {"time": "2024-01-02T10:15:00Z", "close": "NaN"},
            {"time": "2024-01-02T10:30:00Z", "close": "inf"},
            {"time": "2024-01-02T10:45:00Z", "close": 1.3},
        ]
        candles = decode_candles(payload)
        assert [candle.close for candle in candles] == [1.3]
        assert all(math.isfinite(candle.close) for candle in candles)

    def test_only_undecodable_records_raises(self):
        with pytest.raises(PriceFeedError):
            decode_candles([{"time": 1e20, "close": 1.1}, {"time": "2024-01-02T10:00:00Z", "close": "NaN"}])

    def test_empty_array_is_no_data(self):
        assert decode_candles([]) == []

    def test_non_json_text_raises(self):
        with pytest.raises(PriceFeedError):
            decode_candles("<html><body>502 Bad Gateway</body></html>")


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class TestMarketDataClient:
    def test_build_url_extends_end_date_by_one_day(self):
        client = MarketDataClient()
        url = client.build_url(
            "EURUSD",
            datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc),
            datetime(2024, 1, 3, 23, 0, tzinfo=timezone.utc),
        )
        assert url.startswith(f"{DEFAULT_BASE_URL}/market-data/get?")
        assert "from_date=2024-01-02" in url
        assert "to_date=2024-01-04" in url
        assert "timeframe=M15" in url
        assert "symbols=EURUSD" in url

    def test_fetch_candles_decodes_response(self):
        body = b'{"time": "2024-01-02T10:00:00", "close": 1.1}\n{"time": "2024-01-02T10:15:00", "close": 1.2}'
        with patch(URLOPEN, return_value=_response(body)) as urlopen:
            candles = MarketDataClient().fetch_candles(
                "EURUSD", datetime(2024, 1, 2, tzinfo=timezone.utc), datetime(2024, 1, 2, 12, tzinfo=timezone.utc)
            )
        assert [candle.close for candle in candles] == [1.1, 1.2]
        assert urlopen.call_args.kwargs["timeout"] == 30.0

    @pytest.mark.parametrize(
        "error",
        [
            urllib.error.URLError("connection refused"),
            TimeoutError("timed out"),
            ConnectionResetError("reset"),
            http.client.IncompleteRead(b""),
            http.client.RemoteDisconnected("closed"),
        ],
    )
    def test_transport_failures_raise_price_feed_error(self, error):
        with patch(URLOPEN, side_effect=error):
            with pytest.raises(PriceFeedError):
                MarketDataClient().fetch_candles("EURUSD", datetime(2024, 1, 2), datetime(2024, 1, 2))

    def test_truncated_read_raises_price_feed_error(self):
        response = MagicMock()
        response.__enter__.return_value.read.side_effect = http.client.IncompleteRead(b'{"time"', 120)
        with patch(URLOPEN, return_value=response):
            with pytest.raises(PriceFeedError):
                MarketDataClient().fetch_candles("EURUSD", datetime(2024, 1, 2), datetime(2024, 1, 2))

    def test_html_body_raises(self):
        with patch(URLOPEN, return_value=_response(b"<html><body>Service Unavailable</body></html>")):
            with pytest.raises(PriceFeedError):
                MarketDataClient().fetch_candles("EURUSD", datetime(2024, 1, 2), datetime(2024, 1, 2))

    def test_empty_body_raises(self):
        with patch(URLOPEN, return_value=_response(b"")):
            with pytest.raises(PriceFeedError):
                MarketDataClient().fetch_candles("EURUSD", datetime(2024, 1, 2), datetime(2024, 1, 2))

    def test_end_before_start_raises(self):
        with pytest.raises(ValueError):
            MarketDataClient().fetch_candles("EURUSD", datetime(2024, 1, 3), datetime(2024, 1, 2))


@pytest.mark.asyncio
async def test_fetch_candles_async_converts_failure_to_diagnostic():
    client = MagicMock(spec=MarketDataClient)
    client.fetch_candles.side_effect = PriceFeedError("down")
    candles, diagnostics = await fetch_candles_async(client, "EURUSD", datetime(2024, 1, 2), datetime(2024, 1, 3))
    assert candles == []
    assert [item.kind for item in diagnostics] == [DIAG_PRICE_FEED_UNAVAILABLE]
    assert diagnostics[0].symbol == "EURUSD"


@pytest.mark.asyncio
async def test_fetch_candles_async_passes_candles_through():
    client = MagicMock(spec=MarketDataClient)
    client.fetch_candles.return_value = ["candle"]
    candles, diagnostics = await fetch_candles_async(client, "EURUSD", datetime(2024, 1, 2), datetime(2024, 1, 3))
    assert candles == ["candle"]
    assert diagnostics == []


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def test_config_from_env():
    config = PriceFeedConfig.from_env(
        {"MARKET_DATA_BASE_URL": "https://prices.example/api/", "MARKET_DATA_TIMEOUT_SECONDS": "5"}
    )
    assert config.base_url == "https://prices.example/api"
    assert config.endpoint == "/market-data/get"
    assert config.timeframe == "M15"
    assert config.timeout_seconds == 5.0


def test_config_from_env_rejects_bad_timeout():
    with pytest.raises(ValueError):
        PriceFeedConfig.from_env({"MARKET_DATA_TIMEOUT_SECONDS": "soon"})


def test_config_from_settings():
    settings = SimpleNamespace(base_url="https://x/api/", endpoint="/candles", timeframe="H1", timeout_seconds=10)
    config = PriceFeedConfig.from_settings(settings)
    assert config == PriceFeedConfig(base_url="https://x/api", endpoint="/candles", timeframe="H1", timeout_seconds=10.0)
