"""
公共测试夹具：可控时钟、内存版 Redis、示例行情数据
"""

import fnmatch
import os
import sys
from typing import Dict, List, Optional, Tuple

import pytest

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402

from cryptogpt.config import CryptoServiceSettings  # noqa: E402
from cryptogpt.models.crypto import CryptoCurrency, PriceHistoryPoint  # noqa: E402


class FakeClock:
    """手动推进的单调时钟"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """
    redis.asyncio.Redis 的最小内存实现（get / pttl / set / delete / scan_iter / dbsize / ping）

    fail=True 时所有调用抛出 ConnectionError
    """

    def __init__(self, clock: FakeClock):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self.fail = False
        self.calls: List[str] = []

    def _check(self, op: str) -> None:
        self.calls.append(op)
        if self.fail:
            raise RedisConnectionError("connection refused")

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        item = self._data.get(key)
        if item is None:
            return None
        if item[1] is not None and self._clock() >= item[1]:
            del self._data[key]
            return None
        return item

    def put_raw(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        expires = self._clock() + ttl if ttl is not None else None
        self._data[key] = (value, expires)

    def keys_snapshot(self) -> List[str]:
        return sorted(k for k in list(self._data) if self._live(k) is not None)

    async def get(self, key: str) -> Optional[str]:
        self._check("get")
        item = self._live(key)
        return item[0] if item else None

    async def pttl(self, key: str) -> int:
        self._check("pttl")
        item = self._live(key)
        if item is None:
            return -2
        if item[1] is None:
            return -1
        return int((item[1] - self._clock()) * 1000)

    async def set(self, key: str, value: str, ex: Optional[int] = None, px: Optional[int] = None) -> bool:
        self._check("set")
        ttl = px / 1000 if px is not None else ex
        self.put_raw(key, value, ttl)
        return True

    async def delete(self, *keys: str) -> int:
        self._check("delete")
        return sum(1 for k in keys if self._data.pop(k, None) is not None)

    async def scan_iter(self, match: str = "*"):
        self._check("scan_iter")
        for key in self.keys_snapshot():
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def dbsize(self) -> int:
        self._check("dbsize")
        return len(self.keys_snapshot())

    async def ping(self) -> bool:
        self._check("ping")
        return True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis(clock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def test_settings() -> CryptoServiceSettings:
    return CryptoServiceSettings(
        REDIS_URL="",
        COINGECKO_BASE_URL="https://cg.test/api/v3",
        COINCAP_BASE_URL="https://cc.test/v2",
        NEWS_BASE_URL="https://news.test/data/v2/news/",
        OLLAMA_BASE_URL="http://ollama.test/api",
        OLLAMA_MODEL="llama2",
    )


# ─────────────────────────────────────────────────────────
# 示例数据
# ─────────────────────────────────────────────────────────

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


def make_points(prices: List[float], start_ms: int = 1_700_000_000_000, step_ms: int = DAY_MS) -> List[PriceHistoryPoint]:
    return [
        PriceHistoryPoint(timestamp=start_ms + i * step_ms, price=float(p))
        for i, p in enumerate(prices)
    ]


def make_coin(coin_id: str, change: Optional[float] = 0.0, volume: float = 0.0, **kwargs) -> CryptoCurrency:
    return CryptoCurrency(
        id=coin_id,
        symbol=kwargs.pop("symbol", coin_id[:3]),
        name=kwargs.pop("name", coin_id.title()),
        current_price=kwargs.pop("current_price", 1.0),
        market_cap=kwargs.pop("market_cap", 1_000_000.0),
        volume_24h=volume,
        price_change_percentage_24h=change,
        **kwargs,
    )
