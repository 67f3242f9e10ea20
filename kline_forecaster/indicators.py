from __future__ import annotations
from typing import List, Optional, Sequence, Tuple
import math

from .models import Bar, IndicatorSet

RSI_PERIOD = 14
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
BOLLINGER_PERIOD = 20
BOLLINGER_K = 2.0
RSI_NEUTRAL = 50.0

# Every indicator returns its neutral value while fewer than `period` bars end
# at the target index. No function reads past `index`.


def _has_history(index: int, period: int) -> bool:
    return period > 0 and index + 1 >= period


def ema_next(prev_ema: Optional[float], x: float, length: int) -> float:
    if length <= 1:
        return x
    alpha = 2.0 / (length + 1.0)
    return x if prev_ema is None else prev_ema + alpha * (x - prev_ema)


def ema_series(values: Sequence[float], length: int) -> List[float]:
    """Forward-pass EMA seeded with the first value."""
    out: List[float] = []
    prev: Optional[float] = None
    for x in values:
        prev = ema_next(prev, float(x), length)
        out.append(prev)
    return out


def ema(bars: Sequence[Bar], index: int, period: int) -> float:
    series = ema_series([b.close for b in bars[: index + 1]], period)
    return series[-1]


def _window_mean(values: Sequence[float], index: int, period: int) -> float:
    return sum(values[index - period + 1: index + 1]) / float(period)


def sma(bars: Sequence[Bar], index: int, period: int) -> float:
    if not _has_history(index, period):
        return bars[index].close
    return _window_mean([b.close for b in bars[: index + 1]], index, period)


def volume_sma(bars: Sequence[Bar], index: int, period: int = 20) -> float:
    if not _has_history(index, period):
        return bars[index].volume
    return _window_mean([b.volume for b in bars[: index + 1]], index, period)


def _rsi_from_closes(closes: Sequence[float], index: int, period: int) -> float:
    if not _has_history(index, period):
        return RSI_NEUTRAL
    gains = 0.0
    losses = 0.0
    for i in range(max(1, index - period + 1), index + 1):
        ch = closes[i] - closes[i - 1]
        if ch > 0:
            gains += ch
        else:
            losses -= ch
    avg_gain = gains / period
    avg_loss = losses / period
    if avg_loss == 0:
        # flat window carries no momentum either way
        return 100.0 if avg_gain > 0 else RSI_NEUTRAL
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def rsi(bars: Sequence[Bar], index: int, period: int = RSI_PERIOD) -> float:
    return _rsi_from_closes([b.close for b in bars[: index + 1]], index, period)


def macd_series(closes: Sequence[float]) -> Tuple[List[float], List[float]]:
    """MACD line and its EMA signal line for every index.

    Both are 0 until MACD_SLOW bars are available; the signal EMA is seeded
    with the first defined MACD value.
    """
    fast = ema_series(closes, MACD_FAST)
    slow = ema_series(closes, MACD_SLOW)
    macd_vals: List[float] = []
    signal_vals: List[float] = []
    signal: Optional[float] = None
    for i in range(len(closes)):
        if not _has_history(i, MACD_SLOW):
            macd_vals.append(0.0)
            signal_vals.append(0.0)
            continue
        m = fast[i] - slow[i]
        signal = ema_next(signal, m, MACD_SIGNAL)
        macd_vals.append(m)
        signal_vals.append(signal)
    return macd_vals, signal_vals


def macd(bars: Sequence[Bar], index: int) -> Tuple[float, float]:
    macd_vals, signal_vals = macd_series([b.close for b in bars[: index + 1]])
    return macd_vals[-1], signal_vals[-1]


def _bands_from_closes(closes: Sequence[float], index: int, period: int, k: float) -> Tuple[float, float]:
    if not _has_history(index, period):
        return closes[index], closes[index]
    window = closes[index - period + 1: index + 1]
    mean = sum(window) / float(period)
    variance = sum((x - mean) ** 2 for x in window) / float(period)
    std = math.sqrt(variance)
    return mean + k * std, mean - k * std


def bollinger_bands(
    bars: Sequence[Bar], index: int, period: int = BOLLINGER_PERIOD, k: float = BOLLINGER_K
) -> Tuple[float, float]:
    """Return (upper, lower). Population standard deviation."""
    return _bands_from_closes([b.close for b in bars[: index + 1]], index, period, k)


def compute_indicators(bars: Sequence[Bar]) -> List[IndicatorSet]:
    """IndicatorSet for every bar, sharing one MACD pass across the sequence."""
    closes = [b.close for b in bars]
    volumes = [b.volume for b in bars]
    macd_vals, signal_vals = macd_series(closes)

    out: List[IndicatorSet] = []
    for i in range(len(bars)):
        upper, lower = _bands_from_closes(closes, i, BOLLINGER_PERIOD, BOLLINGER_K)
        out.append(IndicatorSet(
            rsi=_rsi_from_closes(closes, i, RSI_PERIOD),
            macd=macd_vals[i],
            macd_signal=signal_vals[i],
            bollinger_upper=upper,
            bollinger_lower=lower,
            sma20=_window_mean(closes, i, 20) if _has_history(i, 20) else closes[i],
            sma50=_window_mean(closes, i, 50) if _has_history(i, 50) else closes[i],
            volume_sma20=_window_mean(volumes, i, 20) if _has_history(i, 20) else volumes[i],
        ))
    return out


def pct_change(new: float, old: float) -> Optional[float]:
    if old == 0:
        return None
    return (new - old) / old * 100.0
