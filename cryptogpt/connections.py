"""
外部连接管理模块
统一创建 / 关闭 Redis（异步）连接与共享的 httpx 客户端。
连接对象由应用生命周期持有，不使用模块级全局状态。
"""

import logging
import time
from typing import Optional

import httpx
from redis.asyncio import ConnectionPool, Redis

from cryptogpt.config import CryptoServiceSettings

logger = logging.getLogger(__name__)
http_logger = logging.getLogger("cryptogpt.http")


# ── Redis ────────────────────────────────────────────────

async def open_redis(settings: CryptoServiceSettings) -> Optional[Redis]:
    """初始化 Redis 异步连接；未配置或连接失败时返回 None"""
    if not settings.REDIS_ENABLED:
        logger.info("未配置 REDIS_URL，跳过 Redis 初始化")
        return None
    pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        decode_responses=True,
        socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
    )
    client = Redis(connection_pool=pool)
    try:
        await client.ping()
    except Exception as exc:
        logger.warning(f"⚠️ Redis 连接失败（服务将以本地缓存模式运行）: {exc}")
        await client.aclose()
        await pool.disconnect()
        return None
    logger.info("✅ Redis 连接成功")
    return client


async def close_redis(client: Optional[Redis]) -> None:
    if client is None:
        return
    await client.aclose()
    await client.connection_pool.disconnect()
    logger.info("Redis 连接已关闭")


async def redis_health(client: Optional[Redis]) -> dict:
    """检查 Redis 连接健康状态"""
    if client is None:
        return {"status": "disabled"}
    try:
        await client.ping()
        return {"status": "healthy"}
    except Exception as exc:
        return {"status": "unhealthy", "error": str(exc)}


# ── HTTP 客户端 ───────────────────────────────────────────

async def _log_request(request: httpx.Request) -> None:
    request.extensions["started_at"] = time.monotonic()
    http_logger.debug(f"→ {request.method} {request.url}")


async def _log_response(response: httpx.Response) -> None:
    request = response.request
    started = request.extensions.get("started_at")
    elapsed = (time.monotonic() - started) * 1000 if started else 0.0
    message = f"← {request.method} {request.url} {response.status_code} ({elapsed:.1f}ms)"
    if response.is_error:
        http_logger.warning(message)
    else:
        http_logger.info(message)


def create_http_client(
    settings: CryptoServiceSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """创建共享的上游 HTTP 客户端（带请求 / 响应日志）"""
    return httpx.AsyncClient(
        timeout=settings.HTTP_TIMEOUT,
        headers={"Accept": "application/json", "User-Agent": settings.USER_AGENT},
        event_hooks={"request": [_log_request], "response": [_log_response]},
        transport=transport,
    )
