"""
Layer 2 – 缓存层
旁路缓存（cache-aside）网关：进程内存（L1） → Redis（L2，可选）

    value = await cache.get_or_create(key, ttl, fetch)

- L1 命中直接返回；L2 命中回填 L1 后返回；均未命中则调用 fetch，
  结果写入所有层级后返回
- fetch 抛出的异常原样向上传播，不写入任何缓存，网关本身不重试
- 同一进程内，同一个键的并发未命中只会调用一次 fetch（single-flight）
- Redis 故障只记录日志并视为未命中 / 跳过写入，不影响请求

启动时根据 Redis 是否可用二选一：LocalCacheLayer / TieredCacheLayer
"""

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from pydantic import TypeAdapter
from redis.asyncio import Redis

logger = logging.getLogger(__name__)

SOURCE_LOCAL = "local"
SOURCE_DISTRIBUTED = "distributed"

_KEY_PREFIX = "cryptogpt"

Fetch = Callable[[], Awaitable[Any]]
Clock = Callable[[], float]


class _FetchAbandoned(Exception):
    """发起 fetch 的调用方被取消，等待者需要重新获取"""


def make_key(namespace: str, *parts: Any) -> str:
    """生成规范化缓存键"""
    raw = ":".join([namespace] + [str(p) for p in parts])
    if len(raw) > 200:
        raw = namespace + ":" + hashlib.md5(raw.encode()).hexdigest()
    return raw


@dataclass
class CacheEntry:
    """缓存条目：值 + 过期时间（clock 时间轴） + 来源层级"""
    value: Any
    expires_at: float
    source: str = SOURCE_LOCAL

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


# ── L1: 进程内存 ──────────────────────────────────────────

class MemoryTier:
    """进程内 TTL 字典，过期条目在访问时惰性清除"""

    def __init__(self, clock: Clock = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            self._entries.pop(key, None)
            return None
        return entry

    def set(self, key: str, value: Any, ttl: float, source: str = SOURCE_LOCAL) -> CacheEntry:
        entry = CacheEntry(value=value, expires_at=self._clock() + ttl, source=source)
        self._entries[key] = entry
        return entry

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


# ── L2: Redis ─────────────────────────────────────────────

class RedisTier:
    """Redis 层：JSON 序列化，所有异常只记录日志"""

    def __init__(self, client: Redis, prefix: str = _KEY_PREFIX):
        self._client = client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def get(
        self, key: str, schema: Optional[TypeAdapter] = None
    ) -> Optional[Tuple[Any, Optional[float]]]:
        """返回 (值, 剩余 TTL 秒)；未命中或出错返回 None"""
        try:
            raw = await self._client.get(self._key(key))
            if raw is None:
                return None
            remaining_ms = await self._client.pttl(self._key(key))
            value = schema.validate_json(raw) if schema is not None else json.loads(raw)
        except Exception as exc:
            logger.warning(f"Redis 读取失败，降级为本地缓存: {key}: {exc}")
            return None
        remaining = remaining_ms / 1000 if remaining_ms and remaining_ms > 0 else None
        return value, remaining

    async def set(
        self, key: str, value: Any, ttl: float, schema: Optional[TypeAdapter] = None
    ) -> bool:
        try:
            if schema is not None:
                serialized = schema.dump_json(value).decode("utf-8")
            else:
                serialized = json.dumps(value, ensure_ascii=False, default=str)
            await self._client.set(self._key(key), serialized, px=max(int(ttl * 1000), 1))
            return True
        except Exception as exc:
            logger.warning(f"Redis 写入失败: {key}: {exc}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(self._key(key)))
        except Exception as exc:
            logger.warning(f"Redis 删除失败: {key}: {exc}")
            return False

    async def clear(self) -> int:
        removed = 0
        try:
            async for redis_key in self._client.scan_iter(match=f"{self._prefix}:*"):
                removed += await self._client.delete(redis_key)
        except Exception as exc:
            logger.warning(f"Redis 清理失败: {exc}")
        return removed

    async def stats(self) -> dict:
        try:
            return {"keys": await self._client.dbsize(), "status": "healthy"}
        except Exception as exc:
            return {"status": "error", "error": str(exc)}


# ── 网关 ──────────────────────────────────────────────────

class LocalCacheLayer:
    """仅使用进程内存的缓存网关"""

    mode = "local"

    def __init__(self, local: Optional[MemoryTier] = None):
        self._local = local if local is not None else MemoryTier()
        self._inflight: Dict[str, asyncio.Future] = {}

    async def get_or_create(
        self,
        key: str,
        ttl: float,
        fetch: Fetch,
        schema: Optional[TypeAdapter] = None,
    ) -> Any:
        """
        命中则返回缓存值，否则调用 fetch 并写入缓存

        发起 fetch 的调用方被取消时，等待者中的一个接手重新获取
        """
        while True:
            found, value = await self._lookup(key, ttl, schema)
            if found:
                return value

            pending = self._inflight.get(key)
            if pending is None:
                break
            logger.debug(f"等待进行中的请求: {key}")
            try:
                return await asyncio.shield(pending)
            except _FetchAbandoned:
                logger.debug(f"进行中的请求已取消，重新获取: {key}")

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            # 上一个请求可能在本次查找之后刚刚写入
            entry = self._local.get(key)
            if entry is not None:
                value = entry.value
            else:
                logger.debug(f"缓存未命中: {key}")
                value = await fetch()
                await self._store(key, value, ttl, schema)
        except asyncio.CancelledError:
            future.set_exception(_FetchAbandoned(key))
            future.exception()
            raise
        except Exception as exc:
            future.set_exception(exc)
            future.exception()
            raise
        else:
            future.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)

    async def _lookup(self, key: str, ttl: float, schema: Optional[TypeAdapter]) -> Tuple[bool, Any]:
        entry = self._local.get(key)
        if entry is not None:
            logger.debug(f"缓存命中（内存）: {key}")
            return True, entry.value
        return False, None

    async def _store(self, key: str, value: Any, ttl: float, schema: Optional[TypeAdapter]) -> None:
        self._local.set(key, value, ttl)
        logger.debug(f"缓存写入（内存）: {key}, ttl={ttl}s")

    def peek(self, key: str) -> Optional[CacheEntry]:
        """读取 L1 条目但不触发回源"""
        return self._local.get(key)

    async def invalidate(self, key: str) -> bool:
        return self._local.delete(key)

    async def clear(self) -> int:
        return self._local.clear()

    def purge_expired(self) -> int:
        return self._local.purge_expired()

    async def stats(self) -> dict:
        return {
            "mode": self.mode,
            "memory": {"keys": len(self._local), "status": "healthy"},
            "redis": {"status": "disabled"},
        }


class TieredCacheLayer(LocalCacheLayer):
    """进程内存 + Redis 两级缓存网关"""

    mode = "tiered"

    def __init__(self, distributed: RedisTier, local: Optional[MemoryTier] = None):
        super().__init__(local)
        self._distributed = distributed

    async def _lookup(self, key: str, ttl: float, schema: Optional[TypeAdapter]) -> Tuple[bool, Any]:
        found, value = await super()._lookup(key, ttl, schema)
        if found:
            return True, value

        hit = await self._distributed.get(key, schema)
        if hit is None:
            return False, None
        value, remaining = hit
        # Redis 键无过期时间时按本次请求的 TTL 回填
        self._local.set(key, value, remaining if remaining is not None else ttl, source=SOURCE_DISTRIBUTED)
        logger.debug(f"缓存命中（Redis）: {key}")
        return True, value

    async def _store(self, key: str, value: Any, ttl: float, schema: Optional[TypeAdapter]) -> None:
        await self._distributed.set(key, value, ttl, schema)
        await super()._store(key, value, ttl, schema)

    async def invalidate(self, key: str) -> bool:
        removed_remote = await self._distributed.delete(key)
        removed_local = await super().invalidate(key)
        return removed_remote or removed_local

    async def clear(self) -> int:
        return await super().clear() + await self._distributed.clear()

    async def stats(self) -> dict:
        result = await super().stats()
        result["redis"] = await self._distributed.stats()
        return result


def build_cache_layer(redis: Optional[Redis], clock: Clock = time.monotonic) -> LocalCacheLayer:
    """根据 Redis 是否可用选择缓存策略（启动时调用一次）"""
    local = MemoryTier(clock=clock)
    if redis is None:
        logger.info("缓存模式: 本地内存")
        return LocalCacheLayer(local)
    logger.info("缓存模式: 内存 + Redis")
    return TieredCacheLayer(RedisTier(redis), local)
