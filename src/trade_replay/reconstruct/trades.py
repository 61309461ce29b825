from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping

from trade_replay.errors import (
    DIAG_MALFORMED_ROW,
    DIAG_NON_TRADE_ROW,
    DIAG_OPEN_AT_EXPORT,
    DIAG_UNMATCHED_CLOSE,
    InvalidInputError,
    MalformedRowError,
)
from trade_replay.ingest.reports import parse_amount, parse_report_time, pick
from trade_replay.models import DealLeg, Diagnostic, OpenTrade, Trade

logger = logging.getLogger(__name__)

EPSILON = 1e-9

_NON_TRADE_TYPES = {
    "balance",
    "credit",
    "deposit",
    "withdrawal",
    "bonus",
    "correction",
    "charge",
    "commission",
    "interest",
}
_ENTRY_IN = {"in", "entry", "open"}
_ENTRY_OUT = {"out", "exit", "close"}


@dataclass
class MatchResult:
    trades: list[Trade] = field(default_factory=list)
    open_trades: list[OpenTrade] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def symbols(self) -> list[str]:
        return symbols_of([*self.trades, *self.open_trades])


@dataclass
class SymbolBook:
    symbol: str
    # Unmatched "in" legs in order of arrival; FIFO scans from the front.
    open_legs: list[DealLeg] = field(default_factory=list)


def normalize_deal_row(
    raw: Mapping[str, Any], index: int, *, default_symbol: str | None = None
) -> DealLeg | None:
    side_value = pick(raw, "type", "Type", "side", "action")
    side_text = str(side_value or "").strip().lower()
    if side_text in _NON_TRADE_TYPES:
        return None

    time = parse_report_time(pick(raw, "time", "Time", "date", "timestamp"), row_index=index)
    symbol = str(pick(raw, "symbol", "Symbol", "instrument") or default_symbol or "").strip()
    side = _normalize_side(side_text, index)
    entry = _normalize_entry(pick(raw, "direction", "Direction", "entry", "Entry"), index)
    volume = parse_amount(pick(raw, "volume", "Volume", "lots", "size"), default=None, row_index=index)
    price = parse_amount(pick(raw, "price", "Price"), default=None, row_index=index)

    if not symbol:
        raise MalformedRowError("Missing symbol", row_index=index)
    if volume <= 0:
        raise MalformedRowError(f"Volume must be positive: {volume}", row_index=index)

    return DealLeg(
        index=index,
        deal_id=_text_or_none(pick(raw, "deal", "Deal", "deal_id", "ticket")),
        time=time,
        symbol=symbol,
        side=side,
        entry=entry,
        volume=volume,
        price=price,
        commission=parse_amount(pick(raw, "commission", "Commission"), row_index=index),
        swap=parse_amount(pick(raw, "swap", "Swap"), row_index=index),
        profit=parse_amount(pick(raw, "profit", "Profit"), row_index=index),
        order_id=_text_or_none(pick(raw, "order", "Order", "order_id")),
        position_id=_text_or_none(pick(raw, "position", "Position", "position_id", "PositionId")),
        raw=dict(raw),
    )


def match_deals(rows: Iterable[Mapping[str, Any]], *, default_symbol: str | None = None) -> MatchResult:
    row_list = list(rows)
    if not row_list:
        raise InvalidInputError("Report contains no rows")

    diagnostics: list[Diagnostic] = []
    legs: list[DealLeg] = []
    for index, raw in enumerate(row_list):
        try:
            leg = normalize_deal_row(raw, index, default_symbol=default_symbol)
        except MalformedRowError as exc:
            diagnostics.append(
                Diagnostic(
                    kind=DIAG_MALFORMED_ROW,
                    message=str(exc),
                    symbol=_text_or_none(pick(raw, "symbol", "Symbol")),
                    row_index=index,
                    context={"row": dict(raw)},
                )
            )
            continue
        if leg is None:
            diagnostics.append(
                Diagnostic(
                    kind=DIAG_NON_TRADE_ROW,
                    message=f"Skipped non-trade row of type {pick(raw, 'type', 'Type')!r}",
                    row_index=index,
                )
            )
            continue
        legs.append(leg)

    result = match_legs(legs)
    result.diagnostics[:0] = diagnostics
    if diagnostics:
        logger.info("Skipped %d report rows during normalization", len(diagnostics))
    return result


def match_legs(legs: Iterable[DealLeg]) -> MatchResult:
    ordered = sorted(legs, key=_sort_key)
    books: dict[str, SymbolBook] = {}
    result = MatchResult()

    for leg in ordered:
        book = books.get(leg.symbol)
        if book is None:
            book = SymbolBook(symbol=leg.symbol)
            books[leg.symbol] = book
        if leg.entry == "in":
            book.open_legs.append(leg)
            continue
        _close_leg(book, leg, result)

    for book in books.values():
        for leg in book.open_legs:
            result.open_trades.append(_open_trade_from_leg(leg))
            result.diagnostics.append(
                Diagnostic(
                    kind=DIAG_OPEN_AT_EXPORT,
                    message=f"Deal {leg.deal_id or leg.index} is still open at export time",
                    symbol=leg.symbol,
                    row_index=leg.index,
                    context={"volume": leg.volume, "side": leg.side},
                )
            )

    result.trades.sort(key=lambda trade: (trade.close_time, trade.open_time))
    return result


def normalize_position_row(raw: Mapping[str, Any], index: int) -> Trade | OpenTrade | None:
    side_text = str(pick(raw, "type", "Type", "side") or "").strip().lower()
    if side_text in _NON_TRADE_TYPES:
        return None

    open_time = parse_report_time(pick(raw, "open_time", "Open Time", "Time"), row_index=index)
    symbol = str(pick(raw, "symbol", "Symbol") or "").strip()
    side = _normalize_side(side_text, index)
    volume = parse_amount(pick(raw, "volume", "Volume", "lots"), default=None, row_index=index)
    open_price = parse_amount(pick(raw, "open_price", "Open Price", "Price"), default=None, row_index=index)
    position_id = _text_or_none(pick(raw, "position", "Position", "position_id", "Ticket"))
    commission = parse_amount(pick(raw, "commission", "Commission"), row_index=index)
    swap = parse_amount(pick(raw, "swap", "Swap"), row_index=index)

    if not symbol:
        raise MalformedRowError("Missing symbol", row_index=index)
    if volume <= 0:
        raise MalformedRowError(f"Volume must be positive: {volume}", row_index=index)

    direction = "long" if side == "buy" else "short"
    close_value = pick(raw, "close_time", "Close Time", "Time.1")
    if close_value is None or str(close_value).strip() == "-":
        return OpenTrade(
            symbol=symbol,
            direction=direction,
            volume=volume,
            open_time=open_time,
            open_price=open_price,
            commission=commission,
            swap=swap,
            deal_id_open=position_id,
            position_id=position_id,
        )

    close_time = parse_report_time(close_value, row_index=index)
    if close_time < open_time:
        raise MalformedRowError("Close time precedes open time", row_index=index)
    close_price = parse_amount(
        pick(raw, "close_price", "Close Price", "Price.1"), default=open_price, row_index=index
    )
    return Trade(
        symbol=symbol,
        direction=direction,
        volume=volume,
        open_time=open_time,
        close_time=close_time,
        open_price=open_price,
        close_price=close_price,
        commission=commission,
        swap=swap,
        profit=parse_amount(pick(raw, "profit", "Profit"), row_index=index),
        deal_id_open=position_id,
        deal_id_close=position_id,
        position_id=position_id,
    )


def trades_from_positions(rows: Iterable[Mapping[str, Any]]) -> MatchResult:
    row_list = list(rows)
    if not row_list:
        raise InvalidInputError("Report contains no rows")

    result = MatchResult()
    for index, raw in enumerate(row_list):
        try:
            record = normalize_position_row(raw, index)
        except MalformedRowError as exc:
            result.diagnostics.append(
                Diagnostic(kind=DIAG_MALFORMED_ROW, message=str(exc), row_index=index, context={"row": dict(raw)})
            )
            continue
        if record is None:
            result.diagnostics.append(
                Diagnostic(kind=DIAG_NON_TRADE_ROW, message="Skipped non-trade row", row_index=index)
            )
        elif isinstance(record, OpenTrade):
            result.open_trades.append(record)
            result.diagnostics.append(
                Diagnostic(
                    kind=DIAG_OPEN_AT_EXPORT,
                    message=f"Position {record.position_id or index} has no close leg",
                    symbol=record.symbol,
                    row_index=index,
                )
            )
        else:
            result.trades.append(record)

    result.trades.sort(key=lambda trade: (trade.close_time, trade.open_time))
    return result


def trades_for_symbol(trades: Iterable[Trade], symbol: str) -> list[Trade]:
    return [trade for trade in trades if trade.symbol == symbol]


def symbols_of(records: Iterable[Trade | OpenTrade]) -> list[str]:
    return sorted({record.symbol for record in records})


def _sort_key(leg: DealLeg) -> tuple:
    return (leg.time, leg.index)


def _close_leg(book: SymbolBook, leg: DealLeg, result: MatchResult) -> None:
    match_index = _find_by_position(book, leg)
    if match_index is None:
        match_index = _find_fifo(book, leg)
    if match_index is None:
        result.diagnostics.append(
            Diagnostic(
                kind=DIAG_UNMATCHED_CLOSE,
                message=(
                    f"No open leg matches close deal {leg.deal_id or leg.index} "
                    f"({leg.side} {leg.volume:g} {leg.symbol})"
                ),
                symbol=leg.symbol,
                row_index=leg.index,
                context={"time": leg.time.isoformat(), "volume": leg.volume, "side": leg.side},
            )
        )
        logger.warning("Unmatched close leg: row %s %s %s %g", leg.index, leg.symbol, leg.side, leg.volume)
        return

    open_leg = book.open_legs[match_index]
    remaining = open_leg.volume - leg.volume
    if remaining > EPSILON:
        # Partial close of an identified position: keep the rest open.
        closed_part = _slice_leg(open_leg, leg.volume)
        book.open_legs[match_index] = _slice_leg(open_leg, remaining)
        open_leg = closed_part
    else:
        book.open_legs.pop(match_index)
    result.trades.append(_trade_from_legs(open_leg, leg))


def _find_by_position(book: SymbolBook, leg: DealLeg) -> int | None:
    if leg.position_id is None:
        return None
    for idx, candidate in enumerate(book.open_legs):
        if candidate.side == leg.side:
            continue
        if leg.position_id in (candidate.position_id, candidate.order_id, candidate.deal_id):
            if candidate.volume + EPSILON >= leg.volume:
                return idx
    return None


def _find_fifo(book: SymbolBook, leg: DealLeg) -> int | None:
    for idx, candidate in enumerate(book.open_legs):
        # The exit row carries the closing action, so a buy position closes with a sell.
        if candidate.side == leg.side:
            continue
        if abs(candidate.volume - leg.volume) < EPSILON:
            return idx
    return None


def _trade_from_legs(open_leg: DealLeg, close_leg: DealLeg) -> Trade:
    return Trade(
        symbol=open_leg.symbol,
        direction=open_leg.direction,
        volume=close_leg.volume,
        open_time=open_leg.time,
        close_time=close_leg.time,
        open_price=open_leg.price,
        close_price=close_leg.price,
        commission=open_leg.commission + close_leg.commission,
        swap=open_leg.swap + close_leg.swap,
        profit=open_leg.profit + close_leg.profit,
        deal_id_open=open_leg.deal_id,
        deal_id_close=close_leg.deal_id,
        position_id=close_leg.position_id or open_leg.position_id,
    )


def _open_trade_from_leg(leg: DealLeg) -> OpenTrade:
    return OpenTrade(
        symbol=leg.symbol,
        direction=leg.direction,
        volume=leg.volume,
        open_time=leg.time,
        open_price=leg.price,
        commission=leg.commission,
        swap=leg.swap,
        deal_id_open=leg.deal_id,
        position_id=leg.position_id,
    )


def _slice_leg(leg: DealLeg, volume: float) -> DealLeg:
    share = volume / leg.volume if leg.volume else 0.0
    return replace(
        leg,
        volume=volume,
        commission=leg.commission * share,
        swap=leg.swap * share,
        profit=leg.profit * share,
    )


def _normalize_side(value: str, index: int) -> str:
    if value.startswith("buy") or value in {"b", "long"}:
        return "buy"
    if value.startswith("sell") or value in {"s", "short"}:
        return "sell"
    raise MalformedRowError(f"Unknown trade type: {value!r}", row_index=index)


def _normalize_entry(value: Any, index: int) -> str:
    text = str(value or "").strip().lower()
    if text in _ENTRY_IN:
        return "in"
    if text in _ENTRY_OUT:
        return "out"
    if text in {"in/out", "inout"}:
        raise MalformedRowError("Reversal (in/out) deals are not supported", row_index=index)
    raise MalformedRowError(f"Unknown deal direction: {value!r}", row_index=index)


def _text_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
