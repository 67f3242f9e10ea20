from __future__ import annotations

import argparse
import asyncio

from kline_forecaster.indicators import compute_indicators
from kline_forecaster.predictor import PredictionEngine
from kline_forecaster.providers.binance import BinanceProvider
from kline_forecaster.scoring import load_scorer
from kline_forecaster.store import BarStore, bars_from_rows


async def _run(symbol: str, interval: str, limit: int, scorer: str, window: int) -> None:
    provider = BinanceProvider(market="spot")
    try:
        rows = await provider.fetch_klines(symbol, interval, limit)
    finally:
        await provider.close()

    store = BarStore(capacity=max(limit, window))
    store.extend(bars_from_rows(rows))
    bars = store.snapshot()
    print(f"bars={len(bars)} first={bars[0].timestamp} last={bars[-1].timestamp}")

    ind = compute_indicators(bars)[-1]
    print(f"rsi={ind.rsi:.2f} macd={ind.macd:.4f} signal={ind.macd_signal:.4f} "
          f"bb=[{ind.bollinger_lower:.2f}, {ind.bollinger_upper:.2f}]")

    engine = PredictionEngine(load_scorer(scorer), window_length=window)
    pred = engine.predict(bars)
    print(f"prediction: {pred.direction.value} {pred.confidence:.1f}% ({pred.reasoning})")

    for bucket_min in (5, 15):
        print(f"resampled {bucket_min}m bars: {len(store.resample(bucket_min * 60_000))}")


def main():
    p = argparse.ArgumentParser(description="One-shot backfill + prediction against live REST data")
    p.add_argument("--symbol", default="BTCUSDT")
    p.add_argument("--interval", default="1m")
    p.add_argument("--limit", type=int, default=500)
    p.add_argument("--window", type=int, default=20)
    p.add_argument("--scorer", default="builtin:momentum")
    args = p.parse_args()
    asyncio.run(_run(args.symbol, args.interval, args.limit, args.scorer, args.window))


if __name__ == "__main__":
    main()
