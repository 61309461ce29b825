from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

LONG = "long"
SHORT = "short"

PRICE_SOURCE_CANDLE = "candle"
PRICE_SOURCE_LAST_CLOSE = "last_close"
PRICE_SOURCE_AVERAGE_ENTRY = "average_entry"
PRICE_SOURCE_NONE = "none"


@dataclass
class DealLeg:
    index: int
    deal_id: str | None
    time: datetime
    symbol: str
    side: str
    entry: str
    volume: float
    price: float
    commission: float = 0.0
    swap: float = 0.0
    profit: float = 0.0
    order_id: str | None = None
    position_id: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict)

    @property
    def direction(self) -> str:
        return LONG if self.side == "buy" else SHORT


@dataclass
class Trade:
    symbol: str
    direction: str
    volume: float
    open_time: datetime
    close_time: datetime
    open_price: float
    close_price: float
    commission: float = 0.0
    swap: float = 0.0
    profit: float = 0.0
    deal_id_open: str | None = None
    deal_id_close: str | None = None
    position_id: str | None = None

    @property
    def net_profit(self) -> float:
        return self.profit + self.commission + self.swap

    @property
    def sign(self) -> float:
        return 1.0 if self.direction == LONG else -1.0


@dataclass
class OpenTrade:
    symbol: str
    direction: str
    volume: float
    open_time: datetime
    open_price: float
    commission: float = 0.0
    swap: float = 0.0
    deal_id_open: str | None = None
    position_id: str | None = None

    @property
    def sign(self) -> float:
        return 1.0 if self.direction == LONG else -1.0


@dataclass(frozen=True)
class MarketCandle:
    time: datetime
    close: float
    open: float | None = None
    high: float | None = None
    low: float | None = None
    volume: float | None = None


@dataclass(frozen=True)
class OpenTradeValuation:
    symbol: str
    direction: str
    volume: float
    open_time: datetime
    open_price: float
    market_price: float
    unrealized_pnl: float
    deal_id_open: str | None = None


@dataclass(frozen=True)
class Snapshot:
    time: datetime
    symbol: str
    market_price: float
    price_source: str
    net_position: float
    realized_pnl: float
    weighted_average_entry_price: float
    unrealized_pnl: float
    total_pnl: float
    balance: float
    peak_balance: float
    drawdown_percent: float
    open_trade_details: tuple[OpenTradeValuation, ...] = ()

    @property
    def open_trades_count(self) -> int:
        return len(self.open_trade_details)


@dataclass(frozen=True)
class BalancePoint:
    time: datetime
    balance: float


@dataclass
class DrawdownEvent:
    start_time: datetime
    end_time: datetime
    peak_time: datetime
    peak_balance: float
    trough_balance: float
    drawdown_percent: float
    drawdown_amount: float
    duration_hours: float
    recovery_time: datetime | None = None
    recovery_duration_hours: float | None = None
    triggering_trades: list[Trade] = field(default_factory=list)

    @property
    def ongoing(self) -> bool:
        return self.recovery_time is None

    @property
    def buy_count(self) -> int:
        return sum(1 for trade in self.triggering_trades if trade.direction == LONG)

    @property
    def sell_count(self) -> int:
        return sum(1 for trade in self.triggering_trades if trade.direction == SHORT)

    @property
    def total_volume(self) -> float:
        return sum(trade.volume for trade in self.triggering_trades)


@dataclass(frozen=True)
class Diagnostic:
    kind: str
    message: str
    symbol: str | None = None
    row_index: int | None = None
    context: Mapping[str, Any] = field(default_factory=dict)
