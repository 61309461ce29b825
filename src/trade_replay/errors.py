from __future__ import annotations

from typing import Any, Mapping

DIAG_MALFORMED_ROW = "malformed_row"
DIAG_NON_TRADE_ROW = "non_trade_row"
DIAG_UNMATCHED_CLOSE = "unmatched_close"
DIAG_OPEN_AT_EXPORT = "open_at_export"
DIAG_PRICE_FEED_UNAVAILABLE = "price_feed_unavailable"
DIAG_PRICES_DISABLED = "prices_disabled"
DIAG_NO_CANDLES_IN_WINDOW = "no_candles_in_window"
DIAG_CANDLES_END_EARLY = "candles_end_early"


class MalformedRowError(ValueError):
    """A single report row could not be normalized."""

    def __init__(self, message: str, *, row_index: int | None = None) -> None:
        super().__init__(message)
        self.row_index = row_index


class PriceFeedError(RuntimeError):
    """The market data endpoint failed, timed out or returned an unusable body."""


class InvalidInputError(ValueError):
    """Fatal to the requested operation, carries the offending input context."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context: Mapping[str, Any] = {key: value for key, value in context.items() if value is not None}

    def __str__(self) -> str:
        base = super().__str__()
        if not self.context:
            return base
        details = ", ".join(f"{key}={value}" for key, value in sorted(self.context.items()))
        return f"{base} ({details})"
