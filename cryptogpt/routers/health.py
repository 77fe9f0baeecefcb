"""健康检查路由"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends
from redis.asyncio import Redis

from cryptogpt import __version__
from cryptogpt.connections import redis_health
from cryptogpt.dependencies import get_cache, get_crypto_service, get_llm_service, get_redis
from cryptogpt.layers.cache import LocalCacheLayer
from cryptogpt.services.crypto_service import CryptoDataService
from cryptogpt.services.llm_service import OllamaLlmService

router = APIRouter(prefix="/api/health", tags=["健康检查"])


def _now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


@router.get("")
async def health():
    """服务存活检查"""
    return {"status": "operational", "timestamp": _now()}


@router.get("/detailed")
async def health_detailed(
    cache: LocalCacheLayer = Depends(get_cache),
    redis: Optional[Redis] = Depends(get_redis),
    llm: OllamaLlmService = Depends(get_llm_service),
    crypto: CryptoDataService = Depends(get_crypto_service),
):
    """缓存层级、Redis、LLM 与当前数据源的状态"""
    llm_ok = await llm.is_healthy()
    return {
        "status": "operational",
        "version": __version__,
        "timestamp": _now(),
        "cache": await cache.stats(),
        "redis": await redis_health(redis),
        "llm": {"status": "healthy" if llm_ok else "unavailable", "model": llm.model},
        "dataSource": crypto.current_data_source(),
    }
