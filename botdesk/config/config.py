"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import List

from dotenv import load_dotenv
from hyperliquid.utils import constants

from botdesk.config.strategy_config import StrategyConfig
from botdesk.core.timeframe import BarTimeFrame, TimeFrameUnit

load_dotenv()

LIVE = "live"
PAPER = "paper"

_DEFAULT_URLS = {
    LIVE: constants.MAINNET_API_URL,
    PAPER: constants.TESTNET_API_URL,
}


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class ConnectionContext:
    """
    Which venue environment this process talks to.

    Built once from Settings and handed to every component that needs it.
    """
    environment: str
    base_url: str
    dex: str
    account_address: str

    @property
    def is_live(self) -> bool:
        return self.environment == LIVE


@dataclass(frozen=True)
class Settings:
    environment: str
    base_url: str
    dex: str
    symbols: List[str]
    private_key: str | None
    agent_key: str | None
    user_address: str | None
    leverage: float
    http_timeout: float
    strategy: str
    bar_unit: str
    bar_count: int
    average_bars: int
    window_bars: int
    quantity_scale: float
    profit_pct: float
    extended_hours: bool
    stream_queue_size: int
    closed_orders_limit: int
    metrics_port: int
    metrics_token: str | None
    log_dir: str
    log_level: str
    instrument_config: str

    def dump(self) -> dict:
        """Return a dict of settings for logging, with secrets removed."""
        data = self.__dict__.copy()
        for key in ("private_key", "agent_key", "metrics_token"):
            if data.get(key):
                data[key] = "***"
        return data

    @staticmethod
    def _symbols() -> List[str]:
        raw = os.getenv("BOT_SYMBOLS")
        if not raw:
            return [os.getenv("BOT_SYMBOL", "BTC")]
        return [s.strip() for s in raw.split(",") if s.strip()]

    @classmethod
    def load(cls) -> "Settings":
        environment = os.getenv("HL_ENVIRONMENT", PAPER).strip().lower()
        cfg = cls(
            environment=environment,
            base_url=os.getenv("HL_BASE_URL") or _DEFAULT_URLS.get(environment, constants.TESTNET_API_URL),
            dex=os.getenv("HL_DEX", ""),
            symbols=cls._symbols(),
            private_key=os.getenv("HL_PRIVATE_KEY"),
            agent_key=os.getenv("HL_AGENT_KEY"),
            user_address=os.getenv("HL_USER_ADDRESS"),
            leverage=_float_env("HL_LEVERAGE", 1.0),
            http_timeout=_float_env("HL_HTTP_TIMEOUT", 5.0),
            strategy=os.getenv("BOT_STRATEGY", "scalper"),
            bar_unit=os.getenv("BOT_BAR_UNIT", "minute"),
            bar_count=_int_env("BOT_BAR_COUNT", 1),
            average_bars=_int_env("BOT_AVERAGE_BARS", 20),
            window_bars=_int_env("BOT_WINDOW_BARS", 20),
            quantity_scale=_float_env("BOT_QUANTITY_SCALE", 1.0),
            profit_pct=_float_env("BOT_PROFIT_PCT", 0.5),
            extended_hours=env_bool("BOT_EXTENDED_HOURS", False),
            stream_queue_size=_int_env("BOT_STREAM_QUEUE_SIZE", 1000),
            closed_orders_limit=_int_env("BOT_CLOSED_ORDERS_LIMIT", 50),
            metrics_port=_int_env("BOT_METRICS_PORT", 9095),
            metrics_token=os.getenv("BOT_METRICS_TOKEN"),
            log_dir=os.getenv("BOT_LOG_DIR", "logs"),
            log_level=os.getenv("BOT_LOG_LEVEL", "INFO").upper(),
            instrument_config=os.getenv("BOT_INSTRUMENT_CONFIG", "configs/instruments.yaml"),
        )
        cfg._validate()
        _log_loaded(cfg)
        return cfg

    def _validate(self) -> None:
        if self.environment not in (LIVE, PAPER):
            raise ValueError("HL_ENVIRONMENT must be 'live' or 'paper'")
        if not self.symbols:
            raise ValueError("BOT_SYMBOLS must name at least one instrument")
        if self.leverage <= 0:
            raise ValueError("HL_LEVERAGE must be > 0")
        if self.http_timeout <= 0:
            raise ValueError("HL_HTTP_TIMEOUT must be > 0")
        if self.bar_count <= 0:
            raise ValueError("BOT_BAR_COUNT must be > 0")
        TimeFrameUnit.parse(self.bar_unit)
        if self.average_bars <= 0 or self.window_bars <= 0:
            raise ValueError("BOT_AVERAGE_BARS and BOT_WINDOW_BARS must be > 0")
        if self.quantity_scale <= 0:
            raise ValueError("BOT_QUANTITY_SCALE must be > 0")
        if self.profit_pct < 0:
            raise ValueError("BOT_PROFIT_PCT must be >= 0")
        if self.stream_queue_size <= 0:
            raise ValueError("BOT_STREAM_QUEUE_SIZE must be > 0")
        if self.closed_orders_limit <= 0:
            raise ValueError("BOT_CLOSED_ORDERS_LIMIT must be > 0")
        if self.environment == LIVE and "testnet" in self.base_url:
            logging.getLogger("botdesk").warning(
                json.dumps({"event": "environment_url_mismatch", "environment": self.environment, "base_url": self.base_url})
            )

    def strategy_config(self) -> StrategyConfig:
        return StrategyConfig(
            strategy=self.strategy,
            timeframe=BarTimeFrame(count=self.bar_count, unit=TimeFrameUnit.parse(self.bar_unit)),
            average_bars=self.average_bars,
            window_bars=self.window_bars,
            quantity_scale=self.quantity_scale,
            profit_pct=self.profit_pct,
            extended_hours=self.extended_hours,
        )

    def connection_context(self) -> ConnectionContext:
        return ConnectionContext(
            environment=self.environment,
            base_url=self.base_url,
            dex=self.dex,
            account_address=self.resolve_account(),
        )

    def resolve_account(self) -> str:
        if self.user_address:
            return self.user_address
        if self.private_key:
            from eth_account import Account

            return Account.from_key(self.private_key).address
        raise RuntimeError("Missing HL_USER_ADDRESS or HL_PRIVATE_KEY")

    def resolve_signer(self):
        from eth_account import Account

        if self.private_key:
            return Account.from_key(self.private_key)
        if self.agent_key:
            return Account.from_key(self.agent_key)
        raise RuntimeError("Missing credentials: set HL_PRIVATE_KEY or HL_AGENT_KEY")


def _log_loaded(cfg: Settings) -> None:
    """Log critical settings once at startup so overrides are obvious."""
    payload = {
        "event": "config_loaded",
        "environment": cfg.environment,
        "base_url": cfg.base_url,
        "dex": cfg.dex,
        "symbols": cfg.symbols,
        "strategy": cfg.strategy,
        "bar": f"{cfg.bar_count}{cfg.bar_unit}",
        "average_bars": cfg.average_bars,
        "window_bars": cfg.window_bars,
    }
    logging.getLogger("botdesk").info(json.dumps(payload))
