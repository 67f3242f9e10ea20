from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Direction(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"


@dataclass(frozen=True)
class Bar:
    timestamp: int  # kline open time (ms), unique key
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def direction(self) -> Direction:
        return Direction.BULLISH if self.close > self.open else Direction.BEARISH

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Bar":
        return cls(
            timestamp=int(d["timestamp"]),
            open=float(d["open"]),
            high=float(d["high"]),
            low=float(d["low"]),
            close=float(d["close"]),
            volume=float(d["volume"]),
        )


@dataclass(frozen=True)
class IndicatorSet:
    rsi: float
    macd: float
    macd_signal: float
    bollinger_upper: float
    bollinger_lower: float
    sma20: float
    sma50: float
    volume_sma20: float


@dataclass(frozen=True)
class KlineEvent:
    symbol: str
    interval: str
    event_time: int
    is_closed: bool
    trades: int
    bar: Bar


@dataclass
class Prediction:
    direction: Direction
    confidence: float  # 0..100
    timestamp: int
    model_version: str
    reasoning: str
    bar_timestamp: int  # newest bar in the scored window
    actual_result: Optional[Direction] = None
    was_correct: Optional[bool] = None

    @property
    def reconciled(self) -> bool:
        return self.actual_result is not None


@dataclass(frozen=True)
class ModelMetrics:
    accuracy: float
    total_predictions: int
    correct_predictions: int
    pending_predictions: int
    last_updated: int
    model_version: str


class ConnectionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class ConnectionState:
    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    attempts: int = 0
    last_connected_at: Optional[int] = None
    last_error: Optional[str] = None
    next_retry_delay_s: Optional[float] = None


@dataclass(frozen=True)
class PriceSummary:
    price: float
    change_24h: float
    change_24h_pct: float
    last_update: int
