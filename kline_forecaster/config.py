from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List
import os
import yaml


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


@dataclass
class AppConfig:
    name: str = "Kline Forecaster"
    log_level: str = "INFO"


@dataclass
class FeedConfig:
    market: str = "spot"  # spot|futures
    symbol: str = "BTCUSDT"
    interval: str = "1m"
    ws_heartbeat_s: int = 20
    base_reconnect_delay_s: float = 1.0
    max_reconnect_attempts: int = 5
    rest_timeout_s: int = 20
    backfill_enabled: bool = True
    backfill_limit: int = 500


@dataclass
class StoreConfig:
    capacity: int = 1000
    path: str = "data"  # directory for the JSON key-value files; "" keeps bars in memory only
    key: str = "bar_history"


@dataclass
class ModelConfig:
    window_length: int = 20
    history_capacity: int = 100
    model_version: str = "1.0.0"
    interval_s: float = 60.0  # periodic inference; 0 disables
    scorer: str = "builtin:momentum"
    timezone: str = "UTC"  # hour-of-day feature


@dataclass
class TelegramConfig:
    enabled: bool = False
    token: str = ""
    chat_ids: List[str] = field(default_factory=list)
    disable_web_page_preview: bool = True
    notify_predictions: bool = True


@dataclass
class Config:
    app: AppConfig = field(default_factory=AppConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    cfg = Config(
        app=AppConfig(**(raw.get("app") or {})),
        feed=FeedConfig(**(raw.get("feed") or {})),
        store=StoreConfig(**(raw.get("store") or {})),
        model=ModelConfig(**(raw.get("model") or {})),
        telegram=TelegramConfig(**(raw.get("telegram") or {})),
    )

    # env overrides (useful on servers)
    cfg.feed.symbol = _env_override(cfg.feed.symbol, "FORECASTER_SYMBOL").upper()
    cfg.store.path = _env_override(cfg.store.path, "FORECASTER_STORE_PATH")
    cfg.telegram.token = _env_override(cfg.telegram.token, "TELEGRAM_TOKEN")
    if cfg.telegram.chat_ids is None:
        cfg.telegram.chat_ids = []

    # Allow TELEGRAM_CHAT_IDS="id1,id2"
    chat_env = os.getenv("TELEGRAM_CHAT_IDS")
    if chat_env:
        cfg.telegram.chat_ids = [x.strip() for x in chat_env.split(",") if x.strip()]
    cfg.telegram.chat_ids = [str(x).strip() for x in cfg.telegram.chat_ids if str(x).strip()]

    if cfg.model.window_length < 1:
        raise ValueError("model.window_length must be >= 1")
    if cfg.store.capacity < cfg.model.window_length:
        raise ValueError("store.capacity must be >= model.window_length")

    return cfg
