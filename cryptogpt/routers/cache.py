"""
缓存管理路由
GET  /api/cache/stats     - 缓存统计
POST /api/cache/clear     - 清理缓存（指定键或全部）
"""

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import Field

from cryptogpt.dependencies import get_cache
from cryptogpt.layers.cache import LocalCacheLayer, make_key
from cryptogpt.models.crypto import CamelModel

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


class ClearRequest(CamelModel):
    """namespace 为空时清理全部缓存"""
    namespace: Optional[str] = None
    key_parts: List[str] = Field(default_factory=list)


@router.get("/stats")
async def cache_stats(cache: LocalCacheLayer = Depends(get_cache)):
    """各缓存层级的键数量与状态"""
    return await cache.stats()


@router.post("/clear")
async def clear_cache(body: ClearRequest, cache: LocalCacheLayer = Depends(get_cache)):
    if not body.namespace:
        removed = await cache.clear()
        return {"cleared": "all", "removed": removed}

    key = make_key(body.namespace, *body.key_parts)
    removed = await cache.invalidate(key)
    return {"cleared": key, "removed": int(removed)}
