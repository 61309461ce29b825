from datetime import datetime, timedelta

import pytest

from trade_replay.errors import InvalidInputError
from trade_replay.models import (
    PRICE_SOURCE_AVERAGE_ENTRY,
    PRICE_SOURCE_CANDLE,
    PRICE_SOURCE_LAST_CLOSE,
    PRICE_SOURCE_NONE,
    MarketCandle,
    OpenTrade,
    Trade,
)
from trade_replay.reconstruct.mark_to_market import max_drawdown_percent, reconstruct

T0 = datetime(2024, 1, 2, 10, 0)


def _at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def _trade(direction, volume, open_min, close_min, open_price, close_price, *, profit=0.0, commission=0.0, symbol="EURUSD"):
    return Trade(
        symbol=symbol,
        direction=direction,
        volume=volume,
        open_time=_at(open_min),
        close_time=_at(close_min),
        open_price=open_price,
        close_price=close_price,
        commission=commission,
        profit=profit,
    )


def _candles(*points):
    return [MarketCandle(time=_at(minute), close=close) for minute, close in points]


# ---------------------------------------------------------------------------
# Reference scenarios
# ---------------------------------------------------------------------------

def test_single_trade_end_to_end():
    trade = _trade("long", 1.0, 0, 60, 100.0, 105.0, profit=500.0, commission=-2.0)
    snapshots = reconstruct([trade], [], 10_000.0)

    assert [snapshot.time for snapshot in snapshots] == [_at(minute) for minute in (0, 15, 30, 45, 60)]
    first, last = snapshots[0], snapshots[-1]
    assert first.net_position == 1.0
    assert first.price_source == PRICE_SOURCE_AVERAGE_ENTRY
    assert first.unrealized_pnl == 0.0
    assert last.realized_pnl == pytest.approx(498.0)
    assert last.net_position == 0.0
    assert last.open_trades_count == 0
    assert last.balance == pytest.approx(10_498.0)
    assert last.drawdown_percent == 0.0


def test_overlapping_long_and_short():
    trades = [
        _trade("long", 1.0, 0, 120, 100.0, 102.0),
        _trade("short", 0.5, 15, 120, 101.0, 102.0),
    ]
    snapshots = reconstruct(trades, _candles((0, 100.0), (60, 102.0)), 10_000.0)
    snapshot = next(item for item in snapshots if item.time == _at(60))

    assert snapshot.price_source == PRICE_SOURCE_CANDLE
    assert snapshot.net_position == pytest.approx(0.5)
    assert snapshot.weighted_average_entry_price == pytest.approx(100.3333333, rel=1e-6)
    assert snapshot.unrealized_pnl == pytest.approx(150_000.0)
    assert snapshot.open_trades_count == 2
    by_direction = {detail.direction: detail.unrealized_pnl for detail in snapshot.open_trade_details}
    assert by_direction == {"long": pytest.approx(200_000.0), "short": pytest.approx(-50_000.0)}


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------

def _mixed_trades():
    return [
        _trade("long", 0.1, 0, 45, 1.10, 1.09, profit=-100.0, commission=-0.7),
        _trade("short", 0.2, 30, 90, 1.09, 1.08, profit=200.0, commission=-1.4),
        _trade("long", 0.3, 60, 180, 1.08, 1.05, profit=-900.0, commission=-2.1),
        _trade("short", 0.1, 150, 240, 1.05, 1.06, profit=-100.0, commission=-0.7),
    ]


def test_realized_pnl_is_conserved():
    trades = _mixed_trades()
    snapshots = reconstruct(trades, [], 10_000.0)
    assert snapshots[-1].realized_pnl == pytest.approx(sum(trade.net_profit for trade in trades))


def test_peak_is_monotonic_and_drawdown_non_negative():
    candles = _candles(*[(minute, 1.10 - minute * 0.0002) for minute in range(0, 255, 15)])
    snapshots = reconstruct(_mixed_trades(), candles, 10_000.0)
    peaks = [snapshot.peak_balance for snapshot in snapshots]
    assert peaks == sorted(peaks)
    assert all(snapshot.peak_balance >= snapshot.balance for snapshot in snapshots)
    assert all(snapshot.drawdown_percent >= 0 for snapshot in snapshots)


def test_drawdown_is_zero_when_peak_is_not_positive():
    trade = _trade("long", 1.0, 0, 30, 100.0, 99.0, profit=-500.0)
    snapshots = reconstruct([trade], [], 0.0)
    assert snapshots[-1].balance == pytest.approx(-500.0)
    assert snapshots[-1].peak_balance == 0.0
    assert all(snapshot.drawdown_percent == 0.0 for snapshot in snapshots)


def test_drawdown_percent_from_peak():
    trade = _trade("long", 1.0, 0, 30, 100.0, 99.0, profit=-500.0)
    snapshots = reconstruct([trade], [], 10_000.0)
    assert snapshots[-1].drawdown_percent == pytest.approx(5.0)
    assert max_drawdown_percent(snapshots) == pytest.approx(5.0)


def test_snapshots_are_ordered_and_frozen():
    snapshots = reconstruct(_mixed_trades(), [], 10_000.0)
    times = [snapshot.time for snapshot in snapshots]
    assert times == sorted(times)
    with pytest.raises(AttributeError):
        snapshots[0].balance = 1.0


# ---------------------------------------------------------------------------
# Time axis and price fallbacks
# ---------------------------------------------------------------------------

def test_synthetic_axis_spans_first_open_to_last_close():
    trades = [_trade("long", 0.1, 5, 52, 1.1, 1.2)]
    snapshots = reconstruct(trades, [], 1_000.0)
    assert snapshots[0].time == _at(5)
    assert snapshots[-1].time == _at(52)
    assert all(snapshot.price_source != PRICE_SOURCE_CANDLE for snapshot in snapshots)


def test_custom_interval():
    trades = [_trade("long", 0.1, 0, 60, 1.1, 1.2)]
    snapshots = reconstruct(trades, [], 1_000.0, interval=timedelta(minutes=30))
    assert [snapshot.time for snapshot in snapshots] == [_at(0), _at(30), _at(60)]


def test_candles_before_first_open_are_dropped():
    trades = [_trade("long", 1.0, 30, 60, 100.0, 101.0, profit=100.0)]
    snapshots = reconstruct(trades, _candles((0, 99.0), (15, 99.5), (30, 100.0), (45, 100.5), (60, 101.0)), 10_000.0)
    assert snapshots[0].time == _at(30)
    assert snapshots[1].unrealized_pnl == pytest.approx(50_000.0)


def test_zero_candle_close_falls_back_to_last_close():
    trades = [
        _trade("long", 1.0, 0, 30, 100.0, 101.0, profit=100.0),
        _trade("long", 1.0, 15, 90, 100.5, 102.0, profit=150.0),
    ]
    snapshots = reconstruct(trades, _candles((0, 100.0), (15, 100.5), (30, 101.0), (45, 0.0), (90, 102.0)), 10_000.0)
    snapshot = next(item for item in snapshots if item.time == _at(45))
    assert snapshot.price_source == PRICE_SOURCE_LAST_CLOSE
    assert snapshot.market_price == 101.0
    assert snapshot.unrealized_pnl == pytest.approx(0.5 * 100_000)


@pytest.mark.parametrize("close", [float("nan"), float("inf")])
def test_non_finite_candle_close_falls_back_to_last_close(close):
    trades = [
        _trade("long", 1.0, 0, 30, 100.0, 101.0, profit=100.0),
        _trade("long", 1.0, 15, 90, 100.5, 102.0, profit=150.0),
    ]
    snapshots = reconstruct(trades, _candles((0, 100.0), (15, 100.5), (30, 101.0), (45, close), (90, 102.0)), 10_000.0)
    snapshot = next(item for item in snapshots if item.time == _at(45))
    assert snapshot.price_source == PRICE_SOURCE_LAST_CLOSE
    assert snapshot.market_price == 101.0
    assert snapshot.balance == pytest.approx(10_100.0 + 0.5 * 100_000)


def test_flat_point_without_candle_has_no_price():
    trades = [
        _trade("long", 1.0, 0, 15, 100.0, 101.0),
        _trade("long", 1.0, 60, 75, 100.0, 101.0),
    ]
    snapshots = reconstruct(trades, [], 10_000.0)
    snapshot = next(item for item in snapshots if item.time == _at(30))
    assert snapshot.price_source == PRICE_SOURCE_NONE
    assert snapshot.net_position == 0.0
    assert snapshot.weighted_average_entry_price == 0.0


def test_open_trades_are_valued_to_end_of_axis():
    trades = [_trade("long", 1.0, 0, 30, 100.0, 101.0, profit=100.0)]
    open_trades = [OpenTrade(symbol="EURUSD", direction="short", volume=0.5, open_time=_at(15), open_price=100.5)]
    snapshots = reconstruct(trades, _candles((0, 100.0), (15, 100.5), (30, 101.0), (45, 100.0)), 10_000.0, open_trades=open_trades)
    last = snapshots[-1]
    assert last.time == _at(45)
    assert last.open_trades_count == 1
    assert last.net_position == pytest.approx(-0.5)
    assert last.unrealized_pnl == pytest.approx(0.5 * 0.5 * 100_000)


def test_only_open_trades_without_candles():
    open_trades = [OpenTrade(symbol="EURUSD", direction="long", volume=1.0, open_time=T0, open_price=1.1)]
    snapshots = reconstruct([], [], 10_000.0, open_trades=open_trades)
    assert len(snapshots) == 1
    assert snapshots[0].price_source == PRICE_SOURCE_AVERAGE_ENTRY


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

def test_empty_input_raises():
    with pytest.raises(InvalidInputError):
        reconstruct([], [], 10_000.0)


def test_mixed_symbols_raise():
    trades = [_trade("long", 1.0, 0, 30, 1.0, 1.0), _trade("long", 1.0, 0, 30, 1.0, 1.0, symbol="XAUUSD")]
    with pytest.raises(InvalidInputError):
        reconstruct(trades, [], 10_000.0)


def test_non_positive_multiplier_raises():
    with pytest.raises(ValueError):
        reconstruct([_trade("long", 1.0, 0, 30, 1.0, 1.0)], [], 10_000.0, 0)
