"""Replay matched trades over a time axis into mark-to-market snapshots.

The axis is the candle series when one is available, otherwise fixed
synthetic steps. At each point the replay tracks realized P/L from closed
trades, values every trade still open against the best available price and
threads the running peak balance through the loop to derive drawdown.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Iterable, Sequence, Union

from trade_replay.errors import InvalidInputError
from trade_replay.models import (
    PRICE_SOURCE_AVERAGE_ENTRY,
    PRICE_SOURCE_CANDLE,
    PRICE_SOURCE_LAST_CLOSE,
    PRICE_SOURCE_NONE,
    MarketCandle,
    OpenTrade,
    OpenTradeValuation,
    Snapshot,
    Trade,
)

logger = logging.getLogger(__name__)

DEFAULT_CONTRACT_MULTIPLIER = 100_000.0
DEFAULT_INTERVAL = timedelta(minutes=15)

Position = Union[Trade, OpenTrade]


def reconstruct(
    trades: Iterable[Trade],
    candles: Iterable[MarketCandle],
    initial_balance: float,
    contract_multiplier: float = DEFAULT_CONTRACT_MULTIPLIER,
    *,
    open_trades: Iterable[OpenTrade] = (),
    interval: timedelta = DEFAULT_INTERVAL,
) -> list[Snapshot]:
    closed_order = sorted(trades, key=lambda trade: (trade.close_time, trade.open_time))
    still_open = list(open_trades)
    if not closed_order and not still_open:
        raise InvalidInputError("No trades to reconstruct")
    if contract_multiplier <= 0:
        raise ValueError(f"contract_multiplier must be positive: {contract_multiplier}")
    if interval <= timedelta(0):
        raise ValueError(f"interval must be positive: {interval}")

    symbol = _single_symbol(closed_order, still_open)
    positions: list[Position] = sorted([*closed_order, *still_open], key=lambda item: item.open_time)
    first_open = positions[0].open_time
    axis = _time_axis(candles, first_open, _axis_end(closed_order, still_open), interval)

    snapshots: list[Snapshot] = []
    active: list[Position] = []
    next_open = 0
    next_close = 0
    realized = 0.0
    last_close_price: float | None = None
    peak = float(initial_balance)

    for point_time, candle_close in axis:
        while next_open < len(positions) and positions[next_open].open_time <= point_time:
            active.append(positions[next_open])
            next_open += 1
        while next_close < len(closed_order) and closed_order[next_close].close_time <= point_time:
            closed = closed_order[next_close]
            realized += closed.net_profit
            last_close_price = closed.close_price
            next_close += 1
        active = [item for item in active if isinstance(item, OpenTrade) or item.close_time > point_time]

        price, source = _market_price(candle_close, active, last_close_price)
        details = tuple(_valuation(item, price, contract_multiplier) for item in active)
        unrealized = sum(detail.unrealized_pnl for detail in details)
        total = realized + unrealized
        balance = initial_balance + total
        peak = max(peak, balance)

        snapshots.append(
            Snapshot(
                time=point_time,
                symbol=symbol,
                market_price=price,
                price_source=source,
                net_position=sum(item.sign * item.volume for item in active),
                realized_pnl=realized,
                weighted_average_entry_price=_weighted_entry(active),
                unrealized_pnl=unrealized,
                total_pnl=total,
                balance=balance,
                peak_balance=peak,
                drawdown_percent=_drawdown_percent(peak, balance),
                open_trade_details=details,
            )
        )

    logger.debug("Reconstructed %d snapshots for %s", len(snapshots), symbol)
    return snapshots


def max_drawdown_percent(snapshots: Iterable[Snapshot]) -> float:
    return max((snapshot.drawdown_percent for snapshot in snapshots), default=0.0)


def _single_symbol(trades: Sequence[Trade], open_trades: Sequence[OpenTrade]) -> str:
    symbols = {item.symbol for item in trades} | {item.symbol for item in open_trades}
    if len(symbols) != 1:
        raise InvalidInputError("Reconstruction expects trades for exactly one symbol", symbols=sorted(symbols))
    return next(iter(symbols))


def _axis_end(trades: Sequence[Trade], open_trades: Sequence[OpenTrade]) -> datetime:
    ends = [trade.close_time for trade in trades] + [item.open_time for item in open_trades]
    return max(ends)


def _time_axis(
    candles: Iterable[MarketCandle], start: datetime, end: datetime, interval: timedelta
) -> list[tuple[datetime, float | None]]:
    by_time: dict[datetime, float] = {}
    for candle in candles:
        moment = candle.time.replace(tzinfo=None) if candle.time.tzinfo else candle.time
        if moment >= start:
            by_time[moment] = candle.close
    if by_time:
        return sorted(by_time.items())

    # No usable candles: fixed steps across [start, end], end always included.
    points: list[tuple[datetime, float | None]] = []
    moment = start
    while moment <= end:
        points.append((moment, None))
        moment += interval
    if points[-1][0] < end:
        points.append((end, None))
    return points


def _market_price(
    candle_close: float | None, active: Sequence[Position], last_close_price: float | None
) -> tuple[float, str]:
    if candle_close and math.isfinite(candle_close):
        return float(candle_close), PRICE_SOURCE_CANDLE
    if not active:
        return 0.0, PRICE_SOURCE_NONE
    if last_close_price is not None:
        return last_close_price, PRICE_SOURCE_LAST_CLOSE
    return _weighted_entry(active), PRICE_SOURCE_AVERAGE_ENTRY


def _valuation(item: Position, price: float, multiplier: float) -> OpenTradeValuation:
    return OpenTradeValuation(
        symbol=item.symbol,
        direction=item.direction,
        volume=item.volume,
        open_time=item.open_time,
        open_price=item.open_price,
        market_price=price,
        unrealized_pnl=(price - item.open_price) * item.volume * multiplier * item.sign,
        deal_id_open=item.deal_id_open,
    )


def _weighted_entry(active: Sequence[Position]) -> float:
    volume = sum(item.volume for item in active)
    if volume <= 0:
        return 0.0
    return sum(item.open_price * item.volume for item in active) / volume


def _drawdown_percent(peak: float, balance: float) -> float:
    if peak <= 0:
        return 0.0
    return max(0.0, (peak - balance) / peak * 100.0)
