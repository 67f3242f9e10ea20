from __future__ import annotations

from datetime import datetime, timezone, timedelta
from typing import List, Optional, Sequence
import re

import numpy as np

from .models import Bar, IndicatorSet

PRICE_SCALE = 100_000.0
VOLUME_LOG_SCALE = 20.0
EPS = 0.001

FEATURE_NAMES = (
    "open",
    "high",
    "low",
    "close",
    "log_volume",
    "rsi",
    "macd",
    "macd_signal",
    "bollinger_position",
    "sma20",
    "sma50",
    "volume_ratio",
    "hour_of_day",
)
FEATURE_COUNT = len(FEATURE_NAMES)

_TZ_RE = re.compile(r"^UTC([+-])(\d{1,2})$")


def parse_tz(tz_str: str) -> timezone:
    tz_str = (tz_str or "UTC").strip().upper()
    if tz_str == "UTC":
        return timezone.utc
    m = _TZ_RE.match(tz_str)
    if not m:
        raise ValueError(f"Unsupported timezone format: {tz_str} (use 'UTC' or 'UTC+3' etc.)")
    sign = 1 if m.group(1) == "+" else -1
    hours = int(m.group(2))
    return timezone(timedelta(hours=sign * hours))


def _hour_fraction(ts_ms: int, tz: timezone) -> float:
    dt = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).astimezone(tz)
    return dt.hour / 24.0


def feature_row(bar: Bar, ind: IndicatorSet, tz: timezone = timezone.utc) -> List[float]:
    return [
        bar.open / PRICE_SCALE,
        bar.high / PRICE_SCALE,
        bar.low / PRICE_SCALE,
        bar.close / PRICE_SCALE,
        float(np.log1p(bar.volume)) / VOLUME_LOG_SCALE,
        ind.rsi / 100.0,
        float(np.tanh(ind.macd / 100.0)),
        float(np.tanh(ind.macd_signal / 100.0)),
        (bar.close - ind.bollinger_lower) / (ind.bollinger_upper - ind.bollinger_lower + EPS),
        ind.sma20 / PRICE_SCALE,
        ind.sma50 / PRICE_SCALE,
        bar.volume / (ind.volume_sma20 + EPS),
        _hour_fraction(bar.timestamp, tz),
    ]


def vectorize(
    bars: Sequence[Bar],
    indicators: Sequence[IndicatorSet],
    *,
    window_length: Optional[int] = None,
    tz: timezone = timezone.utc,
) -> np.ndarray:
    """Build the (window, FEATURE_COUNT) model input matrix.

    Rows follow bar order and are normalised independently. A window of the
    wrong length is rejected rather than padded or truncated.
    """
    if len(indicators) != len(bars):
        raise ValueError(f"indicators ({len(indicators)}) must match bars ({len(bars)})")
    if window_length is not None and len(bars) != window_length:
        raise ValueError(f"window length mismatch: expected {window_length}, got {len(bars)}")

    rows = [feature_row(b, ind, tz) for b, ind in zip(bars, indicators)]
    return np.asarray(rows, dtype=np.float64).reshape(len(rows), FEATURE_COUNT)


def to_model_input(rows: np.ndarray) -> np.ndarray:
    """Add the batch axis expected by scorers: (1, window, FEATURE_COUNT)."""
    return rows.reshape(1, rows.shape[0], FEATURE_COUNT)
