from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from trade_replay.config.app_config import load_app_config
from trade_replay.errors import InvalidInputError
from trade_replay.export import replay_result_record, write_json, write_snapshots_csv
from trade_replay.ingest.reports import load_report
from trade_replay.pipeline import ReplayResult, ReplaySettings, match_report_rows, replay_all
from trade_replay.pricing.market_data import ENV_PREFIX, MarketDataClient, PriceFeedConfig
from trade_replay.timezones import timezone_label


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Replay a broker trade-history export into mark-to-market snapshots.")
    parser.add_argument("report", type=Path, help="Path to the trade-history export (csv/tsv/json).")
    parser.add_argument("--symbol", type=str, action="append", default=None, help="Replay only this symbol (repeatable).")
    parser.add_argument("--offset", type=float, default=None, help="Report clock offset from UTC in hours.")
    parser.add_argument("--initial-balance", type=float, default=None, help="Starting account balance.")
    parser.add_argument("--threshold", type=float, default=None, help="Drawdown event threshold in percent.")
    parser.add_argument(
        "--no-prices",
        action="store_true",
        help="Skip the market data fetch and replay on synthetic intervals.",
    )
    parser.add_argument("--out", type=Path, default=None, help="Write output to a file instead of stdout.")
    parser.add_argument("--format", choices=("csv", "json"), default="csv", help="Output format for --out.")
    parser.add_argument("--config", type=Path, default=None, help="Path to app.toml.")
    parser.add_argument("--log-level", type=str, default=None, help="Logging level (DEBUG, INFO, ...).")
    args = parser.parse_args(argv)

    app_config = load_app_config(args.config)
    logging.basicConfig(
        level=(args.log_level or app_config.app.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = ReplaySettings.from_config(
            app_config,
            initial_balance=args.initial_balance,
            timezone_offset_hours=args.offset,
            threshold_percent=args.threshold,
        )
        report = load_report(args.report)
        match = match_report_rows(report.rows, layout=report.layout)
        client = None
        if app_config.pricing.enabled and not args.no_prices:
            config = PriceFeedConfig.from_settings(app_config.pricing)
            if any(key.startswith(ENV_PREFIX) for key in os.environ):
                config = PriceFeedConfig.from_env(os.environ)
            client = MarketDataClient(config)
        result = asyncio.run(replay_all(match, client, settings, args.symbol))
    except (InvalidInputError, ValueError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    for diagnostic in result.all_diagnostics:
        location = f" row {diagnostic.row_index}" if diagnostic.row_index is not None else ""
        symbol = f" [{diagnostic.symbol}]" if diagnostic.symbol else ""
        print(f"{diagnostic.kind}{symbol}{location}: {diagnostic.message}", file=sys.stderr)

    if args.out is not None:
        _write_output(args.out, args.format, result)
        return 0

    print(f"Report clock: {timezone_label(settings.timezone_offset_hours)}")
    for line in _render(result):
        print(line)
    return 0


def _write_output(out_path: Path, fmt: str, result: ReplayResult) -> None:
    if fmt == "json":
        write_json(out_path, replay_result_record(result))
        return
    snapshots = [snapshot for replay in result.replays for snapshot in replay.snapshots]
    write_snapshots_csv(out_path, snapshots)


def _render(result: ReplayResult) -> list[str]:
    output: list[str] = []
    for replay in result.replays:
        mode = "candles" if replay.priced else "synthetic"
        output.append(f"== {replay.symbol} ({len(replay.trades)} trades, {mode}) ==")
        output.append("time symbol price source net_pos avg_entry realized unrealized balance peak dd_pct")
        for snapshot in replay.snapshots:
            output.append(
                f"{snapshot.time.isoformat()} {snapshot.symbol} {snapshot.market_price:.6g} "
                f"{snapshot.price_source} {snapshot.net_position:.6g} "
                f"{snapshot.weighted_average_entry_price:.6g} {snapshot.realized_pnl:.2f} "
                f"{snapshot.unrealized_pnl:.2f} {snapshot.balance:.2f} {snapshot.peak_balance:.2f} "
                f"{snapshot.drawdown_percent:.2f}"
            )
        if replay.drawdown_events:
            output.append("drawdown events:")
        for event in replay.drawdown_events:
            recovery = event.recovery_time.isoformat() if event.recovery_time else "ongoing"
            output.append(
                f"  {event.start_time.isoformat()} -> {event.end_time.isoformat()} "
                f"{event.drawdown_percent:.2f}% ({event.drawdown_amount:.2f}) "
                f"{event.duration_hours:.1f}h recovery={recovery}"
            )
        metrics = replay.metrics
        output.append(
            f"net={metrics.total_net_pnl:.2f} trades={metrics.total_trades} "
            f"win_rate={_format_metric(metrics.win_rate)} profit_factor={_format_metric(metrics.profit_factor)}"
        )
    return output


def _format_metric(value: float | None) -> str:
    return "na" if value is None else f"{value:.6g}"


if __name__ == "__main__":
    sys.exit(main())
