from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from trade_replay.models import BalancePoint, DrawdownEvent, Snapshot, Trade

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_PERCENT = 5.0


def detect_drawdowns(
    series: Iterable[BalancePoint],
    threshold_percent: float = DEFAULT_THRESHOLD_PERCENT,
    *,
    trades: Iterable[Trade] = (),
) -> list[DrawdownEvent]:
    """Scan a balance history for declines of at least ``threshold_percent``.

    The peak rises only while no episode is open. An episode opens on the first
    point below the peak whose decline reaches the threshold, deepens in place
    while new troughs appear, and closes once a balance strictly exceeds the
    peak it opened from; that balance becomes the next peak. An episode still
    open at the end of the series is returned as ongoing.
    """
    if threshold_percent < 0:
        raise ValueError(f"threshold_percent must be non-negative: {threshold_percent}")

    points = list(series)
    if not points:
        return []

    events: list[DrawdownEvent] = []
    peak = points[0].balance
    peak_time = points[0].time
    current: DrawdownEvent | None = None

    for point in points:
        if current is None:
            if point.balance > peak:
                peak, peak_time = point.balance, point.time
                continue
            if peak <= 0 or point.balance >= peak:
                continue
            percent = (peak - point.balance) / peak * 100.0
            if percent < threshold_percent:
                continue
            current = DrawdownEvent(
                start_time=point.time,
                end_time=point.time,
                peak_time=peak_time,
                peak_balance=peak,
                trough_balance=point.balance,
                drawdown_percent=percent,
                drawdown_amount=peak - point.balance,
                duration_hours=0.0,
            )
            events.append(current)
            continue

        if point.balance > current.peak_balance:
            current.recovery_time = point.time
            current.recovery_duration_hours = _hours(current.start_time, point.time)
            peak, peak_time = point.balance, point.time
            current = None
            continue

        if point.balance < current.trough_balance:
            current.end_time = point.time
            current.trough_balance = point.balance
            current.drawdown_amount = current.peak_balance - point.balance
            current.drawdown_percent = current.drawdown_amount / current.peak_balance * 100.0
            current.duration_hours = _hours(current.start_time, point.time)

    trade_list = list(trades)
    if trade_list:
        for event in events:
            event.triggering_trades = [
                trade for trade in trade_list if event.start_time <= trade.close_time <= event.end_time
            ]

    logger.debug("Detected %d drawdown events at %.2f%% threshold", len(events), threshold_percent)
    return events


def balance_series_from_trades(trades: Iterable[Trade], initial_balance: float) -> list[BalancePoint]:
    ordered = sorted(trades, key=lambda trade: (trade.close_time, trade.open_time))
    if not ordered:
        return []
    balance = initial_balance
    points = [BalancePoint(time=ordered[0].close_time, balance=balance)]
    for trade in ordered:
        balance += trade.net_profit
        points.append(BalancePoint(time=trade.close_time, balance=balance))
    return points


def balance_series_from_snapshots(snapshots: Iterable[Snapshot]) -> list[BalancePoint]:
    return [BalancePoint(time=snapshot.time, balance=snapshot.balance) for snapshot in snapshots]


def _hours(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0
