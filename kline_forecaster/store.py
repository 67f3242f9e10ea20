from __future__ import annotations

import json
import logging
import os
import tempfile
from bisect import bisect_left
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .indicators import pct_change
from .models import Bar, PriceSummary

log = logging.getLogger("store")

DEFAULT_CAPACITY = 1000
DEFAULT_KEY = "bar_history"
DAY_MS = 24 * 60 * 60 * 1000


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """In-process key-value store."""

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStore:
    """One file per key under ``base_path``, written atomically."""

    def __init__(self, base_path: Path | str) -> None:
        self.base_path = Path(base_path)

    def _file_path(self, key: str) -> Path:
        return self.base_path / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        fp = self._file_path(key)
        if not fp.exists():
            return None
        return fp.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        fp = self._file_path(key)
        self.base_path.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.base_path, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp, fp)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def delete(self, key: str) -> None:
        fp = self._file_path(key)
        if fp.exists():
            fp.unlink()


def bars_from_rows(rows: Iterable[Sequence[Any]]) -> List[Bar]:
    """Parse REST kline rows ``[openTime, "o", "h", "l", "c", "v", ...]``."""
    out: List[Bar] = []
    for row in rows:
        try:
            out.append(Bar(
                timestamp=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            ))
        except (TypeError, ValueError, IndexError) as e:
            log.warning("bad_kline_row row=%r err=%s", row, e)
    return out


class BarStore:
    """Bounded, time-ordered bar history with one bar per timestamp.

    Every mutation writes the full collection to the key-value store. Write
    failures are logged and do not roll back the in-memory change.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        *,
        persistence: Optional[KeyValueStore] = None,
        key: str = DEFAULT_KEY,
    ) -> None:
        self.capacity = max(1, int(capacity))
        self.persistence = persistence
        self.key = key
        self._bars: List[Bar] = []

    def __len__(self) -> int:
        return len(self._bars)

    @property
    def latest(self) -> Optional[Bar]:
        return self._bars[-1] if self._bars else None

    def snapshot(self) -> Tuple[Bar, ...]:
        return tuple(self._bars)

    # ---- mutations ----

    def load(self) -> int:
        """Replace in-memory bars with the persisted copy. Corrupt data counts as absent.

        Without a persistence backend the in-memory bars are kept as they are.
        """
        if self.persistence is None:
            return len(self._bars)
        self._bars = []
        try:
            raw = self.persistence.get(self.key)
        except OSError as e:
            log.warning("store_load_failed key=%s err=%s", self.key, e)
            return 0
        except ValueError as e:
            log.warning("store_load_corrupt key=%s err=%s", self.key, e)
            return 0
        if not raw:
            return 0
        try:
            items = json.loads(raw)
            bars = [Bar.from_dict(d) for d in items]
        except (ValueError, TypeError, KeyError) as e:
            log.warning("store_load_corrupt key=%s err=%s", self.key, e)
            return 0
        self._merge(bars)
        log.info("store_loaded key=%s bars=%d", self.key, len(self._bars))
        return len(self._bars)

    def upsert(self, bar: Bar) -> None:
        self._merge([bar])
        self._save()

    def extend(self, bars: Iterable[Bar]) -> None:
        self._merge(bars)
        self._save()

    def clear(self) -> None:
        self._bars = []
        if self.persistence is None:
            return
        try:
            self.persistence.delete(self.key)
        except OSError as e:
            log.warning("store_clear_failed key=%s err=%s", self.key, e)

    def _merge(self, bars: Iterable[Bar]) -> None:
        by_ts = {b.timestamp: b for b in self._bars}
        for b in bars:
            by_ts[b.timestamp] = b
        merged = sorted(by_ts.values(), key=lambda b: b.timestamp)
        if len(merged) > self.capacity:
            del merged[: len(merged) - self.capacity]
        self._bars = merged

    def _save(self) -> None:
        if self.persistence is None:
            return
        try:
            payload = json.dumps([b.to_dict() for b in self._bars], separators=(",", ":"))
            self.persistence.set(self.key, payload)
        except (OSError, TypeError, ValueError) as e:
            log.warning("store_save_failed key=%s bars=%d err=%s", self.key, len(self._bars), e)

    # ---- views ----

    def recent(self, count: int) -> List[Bar]:
        if count <= 0:
            return []
        return list(self._bars[-count:])

    def range(self, start_ms: int, end_ms: int) -> List[Bar]:
        lo = bisect_left([b.timestamp for b in self._bars], start_ms)
        out: List[Bar] = []
        for b in self._bars[lo:]:
            if b.timestamp > end_ms:
                break
            out.append(b)
        return out

    def resample(self, bucket_ms: int) -> List[Bar]:
        return resample(self._bars, bucket_ms)

    def price_summary(self, now_ms: Optional[int] = None) -> Optional[PriceSummary]:
        """Latest close and its change against the first bar of the trailing 24h."""
        latest = self.latest
        if latest is None:
            return None
        ref_ts = (now_ms if now_ms is not None else latest.timestamp) - DAY_MS
        ref = next((b for b in self._bars if b.timestamp >= ref_ts), self._bars[0])
        change = latest.close - ref.open
        return PriceSummary(
            price=latest.close,
            change_24h=change,
            change_24h_pct=pct_change(latest.close, ref.open) or 0.0,
            last_update=latest.timestamp,
        )


def resample(bars: Sequence[Bar], bucket_ms: int) -> List[Bar]:
    """Aggregate consecutive bars sharing a bucket; the bucket start is the new timestamp."""
    if bucket_ms <= 0:
        raise ValueError(f"bucket_ms must be positive, got {bucket_ms}")

    out: List[Bar] = []
    key: Optional[int] = None
    o = h = l = c = v = 0.0
    for b in bars:
        k = (b.timestamp // bucket_ms) * bucket_ms
        if k != key:
            if key is not None:
                out.append(Bar(timestamp=key, open=o, high=h, low=l, close=c, volume=v))
            key = k
            o, h, l, c, v = b.open, b.high, b.low, b.close, b.volume
        else:
            h = max(h, b.high)
            l = min(l, b.low)
            c = b.close
            v += b.volume
    if key is not None:
        out.append(Bar(timestamp=key, open=o, high=h, low=l, close=c, volume=v))
    return out
