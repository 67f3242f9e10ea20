import random

import pytest

from kline_forecaster.indicators import (
    bollinger_bands,
    compute_indicators,
    ema,
    ema_series,
    macd,
    macd_series,
    rsi,
    sma,
    volume_sma,
)
from kline_forecaster.models import Bar


def _bar(idx: int, close: float, volume: float = 1.0) -> Bar:
    return Bar(
        timestamp=idx * 60_000,
        open=close,
        high=close + 1,
        low=close - 1,
        close=close,
        volume=volume,
    )


def _bars(closes, volumes=None):
    volumes = volumes or [1.0] * len(closes)
    return [_bar(i, c, v) for i, (c, v) in enumerate(zip(closes, volumes))]


def test_rsi_saturates_on_rising_closes():
    bars = _bars([100 + 2 * i for i in range(14)])  # 100..126
    assert rsi(bars, len(bars) - 1) == 100.0


def test_rsi_zero_on_falling_closes():
    bars = _bars([126 - 2 * i for i in range(14)])
    assert rsi(bars, len(bars) - 1) == 0.0


def test_rsi_flat_window_is_neutral():
    bars = _bars([50.0] * 30)
    assert rsi(bars, 29) == 50.0


def test_rsi_bounded_for_random_walk():
    rng = random.Random(7)
    closes = [100.0]
    for _ in range(300):
        closes.append(max(1.0, closes[-1] + rng.uniform(-3, 3)))
    bars = _bars(closes)
    for i in range(len(bars)):
        assert 0.0 <= rsi(bars, i) <= 100.0


def test_neutral_defaults_with_short_history():
    bars = _bars([10, 11, 12, 13, 14, 15, 16, 17, 18, 19, 20], volumes=[5] * 11)
    idx = 10
    assert rsi(bars, 5) == 50.0
    assert sma(bars, idx, 20) == bars[idx].close
    assert volume_sma(bars, idx, 20) == bars[idx].volume
    assert bollinger_bands(bars, idx) == (bars[idx].close, bars[idx].close)
    assert macd(bars, idx) == (0.0, 0.0)


def test_macd_zero_until_26_bars():
    bars = _bars([100 + i for i in range(40)])
    macd_vals, signal_vals = macd_series([b.close for b in bars])
    assert all(v == 0.0 for v in macd_vals[:25])
    assert all(v == 0.0 for v in signal_vals[:25])
    assert macd_vals[25] != 0.0


def test_macd_signal_is_smoothed_ema_of_macd():
    closes = [100 + (i % 7) * 1.5 + i * 0.3 for i in range(60)]
    macd_vals, signal_vals = macd_series(closes)
    expected = ema_series(macd_vals[25:], 9)
    assert signal_vals[25:] == pytest.approx(expected)
    # a fixed multiple of the instantaneous MACD would track it exactly
    assert any(abs(s - 0.9 * m) > 1e-9 for s, m in zip(signal_vals[26:], macd_vals[26:]))


def test_ema_matches_recursive_definition():
    closes = [10.0, 11.0, 9.5, 12.0, 13.0]
    alpha = 2.0 / (3 + 1.0)
    expected = closes[0]
    for x in closes[1:]:
        expected = (x - expected) * alpha + expected
    assert ema(_bars(closes), 4, 3) == pytest.approx(expected)


def test_ema_long_sequence_is_linear():
    bars = _bars([42.0] * 5000)
    assert ema(bars, 4999, 26) == pytest.approx(42.0)


def test_bollinger_bands_population_std():
    closes = [float(i) for i in range(1, 21)]
    upper, lower = bollinger_bands(_bars(closes), 19)
    mean = sum(closes) / 20
    std = (sum((c - mean) ** 2 for c in closes) / 20) ** 0.5
    assert upper == pytest.approx(mean + 2 * std)
    assert lower == pytest.approx(mean - 2 * std)


def test_sma_uses_trailing_window():
    bars = _bars([float(i) for i in range(60)])
    assert sma(bars, 59, 20) == pytest.approx(sum(range(40, 60)) / 20)
    assert sma(bars, 59, 50) == pytest.approx(sum(range(10, 60)) / 50)


def test_compute_indicators_matches_point_functions():
    rng = random.Random(3)
    closes = [100 + rng.uniform(-5, 5) for _ in range(80)]
    volumes = [rng.uniform(1, 10) for _ in range(80)]
    bars = _bars(closes, volumes)
    sets = compute_indicators(bars)
    assert len(sets) == len(bars)
    for i in (0, 13, 19, 25, 49, 79):
        s = sets[i]
        assert s.rsi == pytest.approx(rsi(bars, i))
        m, sig = macd(bars, i)
        assert s.macd == pytest.approx(m)
        assert s.macd_signal == pytest.approx(sig)
        upper, lower = bollinger_bands(bars, i)
        assert s.bollinger_upper == pytest.approx(upper)
        assert s.bollinger_lower == pytest.approx(lower)
        assert s.sma20 == pytest.approx(sma(bars, i, 20))
        assert s.sma50 == pytest.approx(sma(bars, i, 50))
        assert s.volume_sma20 == pytest.approx(volume_sma(bars, i, 20))


def test_indicators_do_not_look_ahead():
    rng = random.Random(11)
    closes = [100 + rng.uniform(-5, 5) for _ in range(70)]
    bars = _bars(closes)
    before = compute_indicators(bars[:50])
    after = compute_indicators(bars)
    assert after[:50] == before
