from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, List, Optional, Union

import aiohttp

from ..errors import MalformedMessageError
from ..models import Bar, KlineEvent

log = logging.getLogger("binance")


def _rest_base(market: str) -> str:
    return "https://fapi.binance.com" if market == "futures" else "https://api.binance.com"


def _klines_path(market: str) -> str:
    return "/fapi/v1/klines" if market == "futures" else "/api/v3/klines"


def _ws_base(market: str) -> str:
    return "wss://fstream.binance.com/ws" if market == "futures" else "wss://stream.binance.com:9443/ws"


def stream_name(symbol: str, interval: str) -> str:
    return f"{symbol.lower()}@kline_{interval}"


def stream_url(market: str, symbol: str, interval: str) -> str:
    return f"{_ws_base(market)}/{stream_name(symbol, interval)}"


def parse_kline_message(raw: Union[str, bytes, dict]) -> Optional[KlineEvent]:
    """Normalise a raw feed payload into a KlineEvent.

    Accepts a bare kline event or a combined-stream envelope
    ``{"stream": ..., "data": {...}}``. Returns None for payloads that are
    valid but not klines (subscribe acks, other event types). Raises
    MalformedMessageError for anything that cannot be decoded.
    """
    if isinstance(raw, dict):
        j = raw
    else:
        try:
            j = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MalformedMessageError(f"invalid JSON payload: {e}") from e

    if not isinstance(j, dict):
        raise MalformedMessageError(f"expected JSON object, got {type(j).__name__}")
    if "result" in j and "id" in j:
        return None  # subscribe ack

    data = j.get("data", j)
    if not isinstance(data, dict):
        raise MalformedMessageError("envelope 'data' is not an object")
    if data.get("e") != "kline":
        return None

    k = data.get("k")
    if not isinstance(k, dict):
        raise MalformedMessageError("kline event without 'k' object")
    try:
        bar = Bar(
            timestamp=int(k["t"]),
            open=float(k["o"]),
            high=float(k["h"]),
            low=float(k["l"]),
            close=float(k["c"]),
            volume=float(k["v"]),
        )
        return KlineEvent(
            symbol=str(k.get("s") or data.get("s") or "").upper(),
            interval=str(k.get("i", "")),
            event_time=int(data.get("E") or k["T"]),
            is_closed=bool(k.get("x", False)),
            trades=int(k.get("n", 0)),
            bar=bar,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedMessageError(f"bad kline fields: {e!r}") from e


class BinanceProvider:
    """REST history used to backfill the bar store at startup."""

    def __init__(
        self,
        market: str = "spot",
        *,
        rest_timeout_s: int = 20,
        rest_max_retries: int = 4,
        rest_backoff_s: float = 0.8,
    ):
        self.market = market
        self.rest_timeout_s = rest_timeout_s
        self.rest_max_retries = rest_max_retries
        self.rest_backoff_s = rest_backoff_s

        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.rest_timeout_s,
            connect=min(10, self.rest_timeout_s),
            sock_read=max(10, int(self.rest_timeout_s * 0.75)),
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout())
        return self._session

    async def fetch_klines(self, symbol: str, interval: str, limit: int) -> List[List[Any]]:
        """Raw kline rows, oldest first, exactly as the exchange returns them."""
        url = _rest_base(self.market) + _klines_path(self.market)
        params = {"symbol": symbol.upper(), "interval": interval, "limit": int(limit)}

        sess = await self._get_session()

        backoff = float(self.rest_backoff_s)
        last_err: Optional[BaseException] = None
        data: Any = []
        for attempt in range(1, int(self.rest_max_retries) + 1):
            try:
                async with sess.get(url, params=params) as resp:
                    if resp.status in (418, 429):
                        retry_after = resp.headers.get("Retry-After")
                        sleep_s = float(retry_after) if (retry_after and retry_after.isdigit()) else backoff
                        log.warning(
                            "rest_rate_limited status=%s symbol=%s interval=%s sleep=%.1fs",
                            resp.status,
                            symbol,
                            interval,
                            sleep_s,
                        )
                        await asyncio.sleep(sleep_s)
                        backoff = min(backoff * 2.0, 20.0)
                        continue

                    if resp.status != 200:
                        txt = await resp.text()
                        raise RuntimeError(f"Binance klines failed: {resp.status} {txt[:500]}")

                    data = await resp.json(content_type=None)

                last_err = None
                break

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_err = e
                if attempt >= int(self.rest_max_retries):
                    break
                log.warning(
                    "rest_timeout_or_client_err attempt=%d/%d symbol=%s interval=%s backoff=%.1fs err=%s",
                    attempt,
                    self.rest_max_retries,
                    symbol,
                    interval,
                    backoff,
                    e,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2.0, 20.0)

        if last_err is not None:
            raise last_err
        if not isinstance(data, list):
            raise RuntimeError(f"Binance klines returned {type(data).__name__}, expected list")
        return data
