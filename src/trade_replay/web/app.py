from __future__ import annotations

import asyncio
import logging
import os
from functools import lru_cache
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from trade_replay.config.app_config import AppConfig, load_app_config
from trade_replay.errors import InvalidInputError
from trade_replay.export import replay_result_record
from trade_replay.pipeline import ReplaySettings, match_report_rows, replay_all
from trade_replay.pricing.market_data import ENV_PREFIX, MarketDataClient, PriceFeedConfig
from trade_replay.timezones import supported_offsets, timezone_label

logger = logging.getLogger(__name__)

app = FastAPI(title="Trade Replay")


class ReplayRequest(BaseModel):
    rows: list[dict[str, Any]]
    symbol: str | None = None
    layout: str | None = None
    timezone_offset_hours: float | None = None
    initial_balance: float | None = None
    threshold_percent: float | None = None
    fetch_prices: bool = True


@app.post("/api/replay")
async def replay_api(request: ReplayRequest) -> dict[str, Any]:
    app_config = _app_config()
    try:
        settings = ReplaySettings.from_config(
            app_config,
            initial_balance=request.initial_balance,
            timezone_offset_hours=request.timezone_offset_hours,
            threshold_percent=request.threshold_percent,
        )
        match = await asyncio.to_thread(match_report_rows, request.rows, layout=request.layout)
        client = _price_client(app_config) if request.fetch_prices else None
        symbols = [request.symbol] if request.symbol else None
        result = await replay_all(match, client, settings, symbols)
    except InvalidInputError as exc:
        raise HTTPException(status_code=422, detail={"message": str(exc), "context": dict(exc.context)}) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail={"message": str(exc), "context": {}}) from exc

    payload = replay_result_record(result)
    payload["timezone"] = {
        "offset_hours": settings.timezone_offset_hours,
        "label": timezone_label(settings.timezone_offset_hours),
    }
    return payload


@app.get("/api/timezones")
def timezones_api() -> list[dict[str, Any]]:
    return [{"offset_hours": offset, "label": timezone_label(offset)} for offset in supported_offsets()]


@lru_cache(maxsize=1)
def _app_config() -> AppConfig:
    return load_app_config()


def _price_client(app_config: AppConfig) -> MarketDataClient | None:
    if not app_config.pricing.enabled:
        return None
    if any(key.startswith(ENV_PREFIX) for key in os.environ):
        return MarketDataClient(PriceFeedConfig.from_env(os.environ))
    return MarketDataClient(PriceFeedConfig.from_settings(app_config.pricing))


def main() -> None:
    import uvicorn

    app_config = load_app_config()
    logging.basicConfig(level=app_config.app.log_level)
    uvicorn.run(
        "trade_replay.web.app:app",
        host=app_config.app.host,
        port=app_config.app.port,
        reload=app_config.app.reload,
        log_level=app_config.app.log_level.lower(),
    )


if __name__ == "__main__":
    main()
