from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from trade_replay.models import Trade

Outcome = str

OUTCOME_WIN: Outcome = "win"
OUTCOME_LOSS: Outcome = "loss"
OUTCOME_BREAKEVEN: Outcome = "breakeven"

TIMEFRAME_MONTHLY = "monthly"
TIMEFRAME_DAILY = "daily"


@dataclass(frozen=True)
class TradeMetrics:
    symbol: str
    direction: str
    outcome: Outcome
    gross_pnl: float
    net_pnl: float
    duration_seconds: float
    deal_id_close: str | None = None


@dataclass(frozen=True)
class AggregateMetrics:
    total_trades: int
    wins: int
    losses: int
    breakevens: int
    win_rate: float | None
    profit_factor: float | None
    expectancy: float | None
    avg_win: float | None
    avg_loss: float | None
    largest_win: float | None
    largest_loss: float | None
    max_consecutive_wins: int
    max_consecutive_losses: int
    total_gross_pnl: float
    total_net_pnl: float
    total_commission: float
    total_swap: float
    total_volume: float
    buy_count: int
    sell_count: int
    avg_duration_seconds: float | None
    payoff_ratio: float | None
    max_drawdown: float | None
    max_drawdown_pct: float | None
    roi_pct: float | None
    initial_balance: float | None
    final_balance: float | None


@dataclass(frozen=True)
class PeriodReturn:
    period: str
    start: datetime
    end: datetime
    start_balance: float
    end_balance: float
    return_value: float
    return_percent: float
    trades: int


@dataclass(frozen=True)
class DrawdownPoint:
    time: datetime
    balance: float
    peak_balance: float
    drawdown_percent: float


def compute_trade_metrics(trade: Trade) -> TradeMetrics:
    duration = trade.close_time - trade.open_time
    return TradeMetrics(
        symbol=trade.symbol,
        direction=trade.direction,
        outcome=classify_outcome(trade.net_profit),
        gross_pnl=trade.profit,
        net_pnl=trade.net_profit,
        duration_seconds=duration.total_seconds(),
        deal_id_close=trade.deal_id_close,
    )


def classify_outcome(net_pnl: float) -> Outcome:
    if net_pnl > 0:
        return OUTCOME_WIN
    if net_pnl < 0:
        return OUTCOME_LOSS
    return OUTCOME_BREAKEVEN


def compute_aggregate_metrics(
    trades: Iterable[Trade],
    initial_balance: float | None = None,
) -> AggregateMetrics:
    trade_list = sorted(trades, key=lambda trade: (trade.close_time, trade.open_time))
    trade_metrics = [compute_trade_metrics(trade) for trade in trade_list]

    wins = [metric for metric in trade_metrics if metric.outcome == OUTCOME_WIN]
    losses = [metric for metric in trade_metrics if metric.outcome == OUTCOME_LOSS]
    breakevens = [metric for metric in trade_metrics if metric.outcome == OUTCOME_BREAKEVEN]

    win_count = len(wins)
    loss_count = len(losses)
    total_trades = len(trade_metrics)

    # Breakevens count toward the denominator, as the report's own win rate does.
    win_rate = None
    if total_trades:
        win_rate = win_count / total_trades

    total_win = sum(metric.net_pnl for metric in wins)
    total_loss = sum(metric.net_pnl for metric in losses)
    profit_factor = None
    if total_loss < 0:
        profit_factor = total_win / abs(total_loss)

    expectancy = None
    if total_trades:
        expectancy = sum(metric.net_pnl for metric in trade_metrics) / total_trades

    avg_win = total_win / win_count if win_count else None
    avg_loss = total_loss / loss_count if loss_count else None
    payoff_ratio = None
    if avg_win is not None and avg_loss is not None and avg_loss != 0:
        payoff_ratio = avg_win / abs(avg_loss)

    total_duration = sum(metric.duration_seconds for metric in trade_metrics)
    total_net_pnl = sum(trade.net_profit for trade in trade_list)
    max_wins, max_losses = _max_streaks(trade_metrics)
    max_drawdown, max_drawdown_pct = _max_drawdown(trade_list, initial_balance or 0.0)

    roi_pct = None
    final_balance = None
    if initial_balance is not None:
        final_balance = initial_balance + total_net_pnl
        if initial_balance:
            roi_pct = total_net_pnl / initial_balance * 100.0

    return AggregateMetrics(
        total_trades=total_trades,
        wins=win_count,
        losses=loss_count,
        breakevens=len(breakevens),
        win_rate=win_rate,
        profit_factor=profit_factor,
        expectancy=expectancy,
        avg_win=avg_win,
        avg_loss=avg_loss,
        largest_win=max((metric.net_pnl for metric in wins), default=None),
        largest_loss=min((metric.net_pnl for metric in losses), default=None),
        max_consecutive_wins=max_wins,
        max_consecutive_losses=max_losses,
        total_gross_pnl=sum(trade.profit for trade in trade_list),
        total_net_pnl=total_net_pnl,
        total_commission=sum(trade.commission for trade in trade_list),
        total_swap=sum(trade.swap for trade in trade_list),
        total_volume=sum(trade.volume for trade in trade_list),
        buy_count=sum(1 for trade in trade_list if trade.direction == "long"),
        sell_count=sum(1 for trade in trade_list if trade.direction == "short"),
        avg_duration_seconds=total_duration / total_trades if total_trades else None,
        payoff_ratio=payoff_ratio,
        max_drawdown=max_drawdown,
        max_drawdown_pct=max_drawdown_pct,
        roi_pct=roi_pct,
        initial_balance=initial_balance,
        final_balance=final_balance,
    )


def compute_period_returns(
    trades: Iterable[Trade],
    initial_balance: float,
    timeframe: str = TIMEFRAME_MONTHLY,
) -> list[PeriodReturn]:
    if timeframe not in (TIMEFRAME_MONTHLY, TIMEFRAME_DAILY):
        raise ValueError(f"Unsupported timeframe: {timeframe}")
    ordered = sorted(trades, key=lambda trade: (trade.close_time, trade.open_time))

    buckets: dict[str, list[Trade]] = {}
    for trade in ordered:
        buckets.setdefault(_period_key(trade.close_time, timeframe), []).append(trade)

    rows: list[PeriodReturn] = []
    balance = initial_balance
    for key, items in buckets.items():
        start_balance = balance
        balance += sum(trade.net_profit for trade in items)
        change = balance - start_balance
        start, end = _period_bounds(items[0].close_time, timeframe)
        rows.append(
            PeriodReturn(
                period=key,
                start=start,
                end=end,
                start_balance=start_balance,
                end_balance=balance,
                return_value=change,
                return_percent=change / start_balance * 100.0 if start_balance > 0 else 0.0,
                trades=len(items),
            )
        )
    return rows


def compute_symbol_breakdown(trades: Iterable[Trade]) -> list[dict[str, float | int | str | None]]:
    buckets: dict[str, list[Trade]] = {}
    for trade in trades:
        buckets.setdefault(trade.symbol, []).append(trade)

    rows: list[dict[str, float | int | str | None]] = []
    for symbol, items in sorted(buckets.items(), key=lambda item: item[0]):
        metrics = compute_aggregate_metrics(items)
        rows.append(
            {
                "symbol": symbol,
                "trades": metrics.total_trades,
                "win_rate": metrics.win_rate,
                "total_net_pnl": metrics.total_net_pnl,
                "avg_net_pnl": metrics.expectancy,
                "avg_win": metrics.avg_win,
                "avg_loss": metrics.avg_loss,
                "profit_factor": metrics.profit_factor,
                "total_volume": metrics.total_volume,
            }
        )
    return rows


def compute_drawdown_history(trades: Iterable[Trade], initial_balance: float) -> list[DrawdownPoint]:
    ordered = sorted(trades, key=lambda trade: (trade.close_time, trade.open_time))
    if not ordered:
        return []
    balance = initial_balance
    peak = initial_balance
    history = [DrawdownPoint(time=ordered[0].open_time, balance=balance, peak_balance=peak, drawdown_percent=0.0)]
    for trade in ordered:
        balance += trade.net_profit
        peak = max(peak, balance)
        percent = (peak - balance) / peak * 100.0 if peak > 0 else 0.0
        history.append(
            DrawdownPoint(time=trade.close_time, balance=balance, peak_balance=peak, drawdown_percent=max(0.0, percent))
        )
    return history


def _max_streaks(metrics: Iterable[TradeMetrics]) -> tuple[int, int]:
    max_wins = 0
    max_losses = 0
    current_wins = 0
    current_losses = 0

    for metric in metrics:
        if metric.outcome == OUTCOME_WIN:
            current_wins += 1
            current_losses = 0
        elif metric.outcome == OUTCOME_LOSS:
            current_losses += 1
            current_wins = 0
        else:
            current_wins = 0
            current_losses = 0
        max_wins = max(max_wins, current_wins)
        max_losses = max(max_losses, current_losses)

    return max_wins, max_losses


def _max_drawdown(ordered: list[Trade], initial_balance: float) -> tuple[float | None, float | None]:
    balance = initial_balance
    peak = initial_balance
    max_dd = 0.0
    max_dd_pct: float | None = None

    for trade in ordered:
        balance += trade.net_profit
        if balance > peak:
            peak = balance
        drawdown = peak - balance
        if drawdown > max_dd:
            max_dd = drawdown
            max_dd_pct = (drawdown / peak * 100.0) if peak > 0 else None

    if max_dd == 0.0:
        return None, None
    return max_dd, max_dd_pct


def _period_key(moment: datetime, timeframe: str) -> str:
    if timeframe == TIMEFRAME_MONTHLY:
        return f"{moment.year}-{moment.month:02d}"
    return f"{moment.year}-{moment.month:02d}-{moment.day:02d}"


def _period_bounds(moment: datetime, timeframe: str) -> tuple[datetime, datetime]:
    if timeframe == TIMEFRAME_DAILY:
        start = datetime(moment.year, moment.month, moment.day)
        return start, start.replace(hour=23, minute=59, second=59)
    start = datetime(moment.year, moment.month, 1)
    following = datetime(moment.year + 1, 1, 1) if moment.month == 12 else datetime(moment.year, moment.month + 1, 1)
    return start, following - timedelta(seconds=1)
