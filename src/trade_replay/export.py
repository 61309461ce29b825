from __future__ import annotations

import csv
import json
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from trade_replay.metrics.summary import (
    AggregateMetrics,
    DrawdownPoint,
    PeriodReturn,
    compute_drawdown_history,
    compute_period_returns,
    compute_symbol_breakdown,
)
from trade_replay.models import Diagnostic, DrawdownEvent, OpenTrade, Snapshot, Trade
from trade_replay.pipeline import ReplayResult, SymbolReplay

SNAPSHOT_COLUMNS = (
    "time",
    "symbol",
    "market_price",
    "price_source",
    "net_position",
    "realized_pnl",
    "weighted_average_entry_price",
    "unrealized_pnl",
    "total_pnl",
    "balance",
    "peak_balance",
    "drawdown_percent",
    "open_trades_count",
)


def snapshot_record(snapshot: Snapshot, *, include_details: bool = True) -> dict[str, Any]:
    record = {
        "time": _iso(snapshot.time),
        "symbol": snapshot.symbol,
        "market_price": snapshot.market_price,
        "price_source": snapshot.price_source,
        "net_position": snapshot.net_position,
        "realized_pnl": snapshot.realized_pnl,
        "weighted_average_entry_price": snapshot.weighted_average_entry_price,
        "unrealized_pnl": snapshot.unrealized_pnl,
        "total_pnl": snapshot.total_pnl,
        "balance": snapshot.balance,
        "peak_balance": snapshot.peak_balance,
        "drawdown_percent": snapshot.drawdown_percent,
        "open_trades_count": snapshot.open_trades_count,
    }
    if include_details:
        record["open_trade_details"] = [
            {
                "symbol": detail.symbol,
                "direction": detail.direction,
                "volume": detail.volume,
                "open_time": _iso(detail.open_time),
                "open_price": detail.open_price,
                "market_price": detail.market_price,
                "unrealized_pnl": detail.unrealized_pnl,
                "deal_id_open": detail.deal_id_open,
            }
            for detail in snapshot.open_trade_details
        ]
    return record


def drawdown_event_record(event: DrawdownEvent) -> dict[str, Any]:
    return {
        "start_time": _iso(event.start_time),
        "end_time": _iso(event.end_time),
        "peak_time": _iso(event.peak_time),
        "recovery_time": _iso(event.recovery_time),
        "peak_balance": event.peak_balance,
        "trough_balance": event.trough_balance,
        "drawdown_percent": event.drawdown_percent,
        "drawdown_amount": event.drawdown_amount,
        "duration_hours": event.duration_hours,
        "recovery_duration_hours": event.recovery_duration_hours,
        "ongoing": event.ongoing,
        "buy_count": event.buy_count,
        "sell_count": event.sell_count,
        "total_volume": event.total_volume,
        "triggering_trades": [trade_record(trade) for trade in event.triggering_trades],
    }


def trade_record(trade: Trade | OpenTrade) -> dict[str, Any]:
    record = {
        "symbol": trade.symbol,
        "direction": trade.direction,
        "volume": trade.volume,
        "open_time": _iso(trade.open_time),
        "open_price": trade.open_price,
        "commission": trade.commission,
        "swap": trade.swap,
        "deal_id_open": trade.deal_id_open,
        "position_id": trade.position_id,
    }
    if isinstance(trade, Trade):
        record.update(
            {
                "close_time": _iso(trade.close_time),
                "close_price": trade.close_price,
                "profit": trade.profit,
                "net_profit": trade.net_profit,
                "deal_id_close": trade.deal_id_close,
            }
        )
    return record


def diagnostic_record(diagnostic: Diagnostic) -> dict[str, Any]:
    return {
        "kind": diagnostic.kind,
        "message": diagnostic.message,
        "symbol": diagnostic.symbol,
        "row_index": diagnostic.row_index,
        "context": _jsonable(dict(diagnostic.context)),
    }


def summary_record(metrics: AggregateMetrics) -> dict[str, Any]:
    return asdict(metrics)


def period_return_record(period: PeriodReturn) -> dict[str, Any]:
    return _jsonable(asdict(period))


def drawdown_point_record(point: DrawdownPoint) -> dict[str, Any]:
    return _jsonable(asdict(point))


def write_snapshots_csv(path: Path, snapshots: Iterable[Snapshot]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=SNAPSHOT_COLUMNS)
        writer.writeheader()
        for snapshot in snapshots:
            writer.writerow(snapshot_record(snapshot, include_details=False))


def write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(_jsonable(payload), indent=2) + "\n", encoding="utf-8")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def symbol_replay_record(replay: SymbolReplay, *, initial_balance: float | None = None) -> dict[str, Any]:
    balance = initial_balance if initial_balance is not None else replay.metrics.initial_balance or 0.0
    return {
        "symbol": replay.symbol,
        "priced": replay.priced,
        "summary": summary_record(replay.metrics),
        "trades": [trade_record(trade) for trade in replay.trades],
        "open_trades": [trade_record(trade) for trade in replay.open_trades],
        "snapshots": [snapshot_record(snapshot) for snapshot in replay.snapshots],
        "drawdown_events": [drawdown_event_record(event) for event in replay.drawdown_events],
        "realized_drawdown_events": [drawdown_event_record(event) for event in replay.realized_drawdown_events],
        "monthly_returns": [
            period_return_record(period) for period in compute_period_returns(replay.trades, balance)
        ],
        "drawdown_history": [
            drawdown_point_record(point) for point in compute_drawdown_history(replay.trades, balance)
        ],
        "diagnostics": [diagnostic_record(item) for item in replay.diagnostics],
    }


def replay_result_record(result: ReplayResult) -> dict[str, Any]:
    return {
        "symbols": [symbol_replay_record(replay) for replay in result.replays],
        "symbol_breakdown": compute_symbol_breakdown(trade for replay in result.replays for trade in replay.trades),
        "diagnostics": [diagnostic_record(item) for item in result.diagnostics],
    }
