from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterable, Mapping, Sequence

from trade_replay.config.app_config import AppConfig
from trade_replay.errors import (
    DIAG_CANDLES_END_EARLY,
    DIAG_NO_CANDLES_IN_WINDOW,
    DIAG_PRICES_DISABLED,
    InvalidInputError,
)
from trade_replay.ingest.reports import LAYOUT_POSITIONS, detect_layout
from trade_replay.metrics.drawdown import (
    balance_series_from_snapshots,
    balance_series_from_trades,
    detect_drawdowns,
)
from trade_replay.metrics.summary import AggregateMetrics, compute_aggregate_metrics
from trade_replay.models import (
    PRICE_SOURCE_CANDLE,
    Diagnostic,
    DrawdownEvent,
    MarketCandle,
    OpenTrade,
    Snapshot,
    Trade,
)
from trade_replay.pricing.market_data import MarketDataClient, fetch_candles_async
from trade_replay.reconstruct.mark_to_market import reconstruct
from trade_replay.reconstruct.trades import MatchResult, match_deals, trades_for_symbol, trades_from_positions
from trade_replay.timezones import shift_candles, to_feed_clock, validate_offset

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplaySettings:
    initial_balance: float = 10_000.0
    contract_multiplier: float = 100_000.0
    interval: timedelta = timedelta(minutes=15)
    timezone_offset_hours: float = 0.0
    threshold_percent: float = 5.0

    def __post_init__(self) -> None:
        validate_offset(self.timezone_offset_hours)
        if self.threshold_percent < 0:
            raise ValueError(f"threshold_percent must be non-negative: {self.threshold_percent}")

    @classmethod
    def from_config(cls, config: AppConfig, **overrides: Any) -> "ReplaySettings":
        values: dict[str, Any] = {
            "initial_balance": config.replay.initial_balance,
            "contract_multiplier": config.replay.contract_multiplier,
            "interval": config.replay.interval,
            "timezone_offset_hours": config.replay.timezone_offset_hours,
            "threshold_percent": config.drawdown.threshold_percent,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


@dataclass
class SymbolReplay:
    symbol: str
    trades: list[Trade]
    open_trades: list[OpenTrade]
    candles: list[MarketCandle]
    snapshots: list[Snapshot]
    drawdown_events: list[DrawdownEvent]
    realized_drawdown_events: list[DrawdownEvent]
    metrics: AggregateMetrics
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def priced(self) -> bool:
        return any(snapshot.price_source == PRICE_SOURCE_CANDLE for snapshot in self.snapshots)


@dataclass
class ReplayResult:
    replays: list[SymbolReplay]
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def all_diagnostics(self) -> list[Diagnostic]:
        output = list(self.diagnostics)
        for replay in self.replays:
            output.extend(replay.diagnostics)
        return output


def match_report_rows(
    rows: Sequence[Mapping[str, Any]], *, layout: str | None = None, default_symbol: str | None = None
) -> MatchResult:
    if not rows:
        raise InvalidInputError("Report contains no rows")
    resolved = layout or detect_layout(rows[0].keys())
    if resolved == LAYOUT_POSITIONS:
        return trades_from_positions(rows)
    return match_deals(rows, default_symbol=default_symbol)


async def replay_symbol(
    symbol: str,
    match: MatchResult,
    client: MarketDataClient | None,
    settings: ReplaySettings,
) -> SymbolReplay:
    trades = trades_for_symbol(match.trades, symbol)
    open_trades = [item for item in match.open_trades if item.symbol == symbol]
    if not trades and not open_trades:
        raise InvalidInputError("No trades found for symbol", symbol=symbol)

    start = min(item.open_time for item in [*trades, *open_trades])
    end = max([trade.close_time for trade in trades] + [item.open_time for item in open_trades])
    offset = settings.timezone_offset_hours
    diagnostics: list[Diagnostic] = []

    candles: list[MarketCandle] = []
    if client is None:
        diagnostics.append(
            Diagnostic(
                kind=DIAG_PRICES_DISABLED,
                message="Price fetching disabled; using synthetic intervals",
                symbol=symbol,
            )
        )
    else:
        feed_candles, fetch_diagnostics = await fetch_candles_async(
            client, symbol, to_feed_clock(start, offset), to_feed_clock(end, offset)
        )
        diagnostics.extend(fetch_diagnostics)
        candles = shift_candles(feed_candles, offset)
        last_candle = max((candle.time for candle in candles), default=None)
        if last_candle is not None and last_candle < start:
            diagnostics.append(
                Diagnostic(
                    kind=DIAG_NO_CANDLES_IN_WINDOW,
                    message="No candles at or after the first open; using synthetic intervals",
                    symbol=symbol,
                    context={"start": start.isoformat(), "end": end.isoformat()},
                )
            )
        elif last_candle is not None and last_candle < end:
            # Closes after the last candle never reach the snapshot series.
            diagnostics.append(
                Diagnostic(
                    kind=DIAG_CANDLES_END_EARLY,
                    message="Candles end before the last close; later trades are missing from snapshots",
                    symbol=symbol,
                    context={"last_candle": last_candle.isoformat(), "end": end.isoformat()},
                )
            )

    snapshots = reconstruct(
        trades,
        candles,
        settings.initial_balance,
        settings.contract_multiplier,
        open_trades=open_trades,
        interval=settings.interval,
    )
    drawdown_events = detect_drawdowns(
        balance_series_from_snapshots(snapshots), settings.threshold_percent, trades=trades
    )
    realized_events = detect_drawdowns(
        balance_series_from_trades(trades, settings.initial_balance), settings.threshold_percent, trades=trades
    )
    logger.info(
        "Replayed %s: %d trades, %d open, %d snapshots, %d drawdown events",
        symbol,
        len(trades),
        len(open_trades),
        len(snapshots),
        len(drawdown_events),
    )
    return SymbolReplay(
        symbol=symbol,
        trades=trades,
        open_trades=open_trades,
        candles=candles,
        snapshots=snapshots,
        drawdown_events=drawdown_events,
        realized_drawdown_events=realized_events,
        metrics=compute_aggregate_metrics(trades, settings.initial_balance),
        diagnostics=diagnostics,
    )


async def replay_all(
    match: MatchResult,
    client: MarketDataClient | None,
    settings: ReplaySettings,
    symbols: Iterable[str] | None = None,
) -> ReplayResult:
    selected = list(symbols) if symbols is not None else match.symbols
    if not selected:
        raise InvalidInputError("Report contains no trades")
    replays = await asyncio.gather(*(replay_symbol(symbol, match, client, settings) for symbol in selected))
    return ReplayResult(replays=list(replays), diagnostics=list(match.diagnostics))


def replay_report_rows(
    rows: Sequence[Mapping[str, Any]],
    *,
    client: MarketDataClient | None = None,
    settings: ReplaySettings | None = None,
    symbols: Iterable[str] | None = None,
    layout: str | None = None,
) -> ReplayResult:
    match = match_report_rows(rows, layout=layout)
    return asyncio.run(replay_all(match, client, settings or ReplaySettings(), symbols))
