"""
新闻路由
GET /api/news             - 市场新闻
GET /api/news/{coin_id}   - 币种新闻
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from cryptogpt.dependencies import get_news_service
from cryptogpt.models.crypto import CryptoNewsItem
from cryptogpt.services.news_service import NewsService

router = APIRouter(prefix="/api/news", tags=["新闻"])


@router.get("", response_model=List[CryptoNewsItem])
async def get_market_news(
    limit: int = Query(default=20, ge=1, le=100),
    svc: NewsService = Depends(get_news_service),
):
    return await svc.get_market_news(limit)


@router.get("/{coin_id}", response_model=List[CryptoNewsItem])
async def get_coin_news(
    coin_id: str,
    symbol: Optional[str] = Query(default=None, description="币种符号，默认使用 coin_id"),
    limit: int = Query(default=10, ge=1, le=100),
    svc: NewsService = Depends(get_news_service),
):
    """指定币种的新闻"""
    return await svc.get_coin_news(coin_id, symbol=symbol, limit=limit)
