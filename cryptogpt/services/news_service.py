"""
加密货币新闻服务（CryptoCompare /data/v2/news/）
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import TypeAdapter

from cryptogpt.config import CryptoServiceSettings
from cryptogpt.layers.acquisition import ProviderError
from cryptogpt.layers.cache import LocalCacheLayer, make_key
from cryptogpt.models.crypto import CryptoNewsItem

logger = logging.getLogger(__name__)

_NEWS_SCHEMA = TypeAdapter(List[CryptoNewsItem])
_SENTENCE_END = re.compile(r"(?<=[.!?])\s")
_FALLBACK_POOL_SIZE = 30


def _split_pipe(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, list):
        return [str(v) for v in value if v]
    return [part for part in str(value).split("|") if part]


class NewsService:
    """新闻业务服务"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: LocalCacheLayer,
        settings: CryptoServiceSettings,
    ):
        self._client = client
        self._cache = cache
        self._settings = settings

    async def get_market_news(self, limit: int = 20) -> List[CryptoNewsItem]:
        """热门市场新闻；上游失败时返回空列表"""
        try:
            return await self._cache.get_or_create(
                make_key("news", "market", limit),
                self._settings.NEWS_CACHE_TTL,
                lambda: self._fetch({"limit": limit}),
                _NEWS_SCHEMA,
            )
        except Exception as exc:
            logger.error(f"市场新闻获取失败: {exc}")
            return []

    async def get_coin_news(
        self, coin_id: str, symbol: Optional[str] = None, limit: int = 10
    ) -> List[CryptoNewsItem]:
        """
        指定币种的新闻

        上游按分类检索无结果时，退回到热门新闻中按标题匹配币种 ID / 符号
        """
        symbol = (symbol or coin_id).upper()
        try:
            items = await self._cache.get_or_create(
                make_key("news", "coin", coin_id, symbol, limit),
                self._settings.NEWS_CACHE_TTL,
                lambda: self._fetch({"limit": limit, "categories": symbol}),
                _NEWS_SCHEMA,
            )
        except Exception as exc:
            logger.warning(f"币种新闻获取失败（{coin_id}），退回到市场新闻过滤: {exc}")
            items = []
        if items:
            return items

        needles = {coin_id.lower(), symbol.lower()}
        pool = await self.get_market_news(_FALLBACK_POOL_SIZE)
        return [n for n in pool if any(k in n.title.lower() for k in needles)][:limit]

    async def _fetch(self, params: Dict[str, Any]) -> List[CryptoNewsItem]:
        query = {"lang": "EN", "sortOrder": "popular", **params}
        headers = {}
        if self._settings.NEWS_API_KEY:
            headers["authorization"] = f"Apikey {self._settings.NEWS_API_KEY}"
        try:
            response = await self._client.get(self._settings.NEWS_BASE_URL, params=query, headers=headers)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError("cryptocompare", f"新闻请求失败: {exc}") from exc

        items = [self._map_item(raw) for raw in payload.get("Data") or []]
        if not items:
            raise ProviderError("cryptocompare", "新闻列表为空")
        return items

    def _map_item(self, raw: Dict[str, Any]) -> CryptoNewsItem:
        body = raw.get("body") or ""
        first_sentence = _SENTENCE_END.split(body.strip(), maxsplit=1)[0] if body else ""
        published = raw.get("published_on")
        source_info = raw.get("source_info") or {}
        return CryptoNewsItem(
            id=str(raw.get("id") or ""),
            title=raw.get("title") or "",
            summary=first_sentence,
            description=body[:200] + "..." if body else "",
            url=raw.get("url") or "",
            image_url=raw.get("imageurl") or "",
            source=source_info.get("name") or raw.get("source") or "",
            published_at=datetime.fromtimestamp(published, tz=timezone.utc) if published else None,
            categories=_split_pipe(raw.get("categories")),
            tags=_split_pipe(raw.get("tags")),
        )
