from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

from trade_replay.timezones import validate_offset

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python <3.11
    import tomli as tomllib

DEFAULT_CONFIG_PATH = Path("config/app.toml")


@dataclass(frozen=True)
class AppSettings:
    host: str
    port: int
    reload: bool
    log_level: str


@dataclass(frozen=True)
class PricingSettings:
    base_url: str
    endpoint: str
    timeframe: str
    timeout_seconds: float
    enabled: bool


@dataclass(frozen=True)
class ReplayDefaults:
    initial_balance: float
    contract_multiplier: float
    interval_minutes: int
    timezone_offset_hours: float

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.interval_minutes)


@dataclass(frozen=True)
class DrawdownSettings:
    threshold_percent: float


@dataclass(frozen=True)
class AppConfig:
    app: AppSettings
    pricing: PricingSettings
    replay: ReplayDefaults
    drawdown: DrawdownSettings


def load_app_config(path: Path | None = None) -> AppConfig:
    config_path = path or DEFAULT_CONFIG_PATH
    raw: Mapping[str, Any] = {}
    if config_path.exists():
        raw = tomllib.loads(config_path.read_text(encoding="utf-8"))

    app_raw = _section(raw, "app")
    pricing_raw = _section(raw, "pricing")
    replay_raw = _section(raw, "replay")
    drawdown_raw = _section(raw, "drawdown")

    app = AppSettings(
        host=str(app_raw.get("host", "127.0.0.1")),
        port=int(app_raw.get("port", 8000)),
        reload=bool(app_raw.get("reload", False)),
        log_level=str(app_raw.get("log_level", "INFO")).upper(),
    )

    pricing = PricingSettings(
        base_url=str(pricing_raw.get("base_url", "https://test.neuix.host/api")),
        endpoint=str(pricing_raw.get("endpoint", "/market-data/get")),
        timeframe=str(pricing_raw.get("timeframe", "M15")),
        timeout_seconds=float(pricing_raw.get("timeout_seconds", 30.0)),
        enabled=bool(pricing_raw.get("enabled", True)),
    )

    replay = ReplayDefaults(
        initial_balance=float(replay_raw.get("initial_balance", 10_000.0)),
        contract_multiplier=float(replay_raw.get("contract_multiplier", 100_000.0)),
        interval_minutes=int(replay_raw.get("interval_minutes", 15)),
        timezone_offset_hours=validate_offset(replay_raw.get("timezone_offset_hours", 0.0)),
    )
    if replay.contract_multiplier <= 0:
        raise ValueError("replay.contract_multiplier must be positive")
    if replay.interval_minutes <= 0:
        raise ValueError("replay.interval_minutes must be positive")

    drawdown = DrawdownSettings(
        threshold_percent=float(drawdown_raw.get("threshold_percent", 5.0)),
    )
    if drawdown.threshold_percent < 0:
        raise ValueError("drawdown.threshold_percent must be non-negative")

    return AppConfig(app=app, pricing=pricing, replay=replay, drawdown=drawdown)


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key)
    if isinstance(value, Mapping):
        return value
    return {}
