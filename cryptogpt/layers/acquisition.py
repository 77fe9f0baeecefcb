"""
Layer 1 – 数据获取层
从多个行情数据提供商（CoinGecko / CoinCap / Yahoo Finance）拉取原始数据，
映射为统一的领域模型后向上层提供标准接口。

所有 HTTP 提供商共享同一个 httpx.AsyncClient；yfinance 为同步库，
在工作线程中执行。上游失败或返回空结果时抛出 ProviderError。
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
import pandas as pd
import yfinance as yf

from cryptogpt.config import CryptoServiceSettings
from cryptogpt.layers.processing import ProcessingLayer
from cryptogpt.models.crypto import CryptoCurrency, CryptoCurrencyDetail, MarketHistory

logger = logging.getLogger(__name__)

_MS_PER_DAY = 24 * 60 * 60 * 1000


class ProviderError(RuntimeError):
    """上游数据源调用失败"""

    def __init__(self, provider: str, message: str):
        super().__init__(f"[{provider}] {message}")
        self.provider = provider


class RateLimitedError(ProviderError):
    """上游限流（HTTP 429）或仍处于冷却期"""


def _float(value: Any) -> Optional[float]:
    """CoinCap 等接口以字符串返回数值"""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _first(values: Optional[List[Any]]) -> Optional[str]:
    for value in values or []:
        if value:
            return value
    return None


# ── HTTP 提供商基类 ───────────────────────────────────────

class _HttpProvider:
    name = "http"

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        rate_limit_reset: float = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._rate_limit_reset = rate_limit_reset
        self._clock = clock
        self._cooldown_until = 0.0
        self._proc = ProcessingLayer()

    def _headers(self) -> Dict[str, str]:
        return {}

    @property
    def is_rate_limited(self) -> bool:
        return self._clock() < self._cooldown_until

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if self.is_rate_limited:
            raise RateLimitedError(self.name, "仍处于限流冷却期，跳过请求")

        try:
            response = await self._client.get(
                f"{self._base_url}{path}", params=params, headers=self._headers()
            )
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"请求失败: {exc}") from exc

        if response.status_code == 429:
            self._cooldown_until = self._clock() + self._rate_limit_reset
            logger.warning(f"⚠️ {self.name} 触发限流，冷却 {self._rate_limit_reset}s")
            raise RateLimitedError(self.name, "HTTP 429 Too Many Requests")
        if response.is_error:
            raise ProviderError(self.name, f"HTTP {response.status_code}: {path}")

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(self.name, f"无法解析响应: {exc}") from exc


# ── CoinGecko ─────────────────────────────────────────────

class CoinGeckoProvider(_HttpProvider):
    name = "coingecko"

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: CryptoServiceSettings,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(
            client,
            settings.COINGECKO_BASE_URL,
            rate_limit_reset=settings.COINGECKO_RATE_LIMIT_RESET,
            clock=clock,
        )
        self._api_key = settings.COINGECKO_API_KEY

    def _headers(self) -> Dict[str, str]:
        return {"x-cg-demo-api-key": self._api_key} if self._api_key else {}

    async def get_top_coins(self, limit: int) -> List[CryptoCurrency]:
        data = await self._get_json("/coins/markets", {
            "vs_currency": "usd",
            "order": "market_cap_desc",
            "per_page": limit,
            "page": 1,
            "sparkline": "false",
            "price_change_percentage": "7d",
        })
        coins = [self._map_market(item) for item in data or []]
        if not coins:
            raise ProviderError(self.name, "币种列表为空")
        return coins

    async def get_coin_data(self, coin_id: str) -> CryptoCurrencyDetail:
        data = await self._get_json(f"/coins/{coin_id}", {
            "localization": "false",
            "tickers": "false",
            "market_data": "true",
            "community_data": "true",
            "developer_data": "false",
            "sparkline": "false",
        })
        if not data or "id" not in data:
            raise ProviderError(self.name, f"未找到币种: {coin_id}")
        return self._map_detail(data)

    async def get_market_chart(self, coin_id: str, days: int) -> MarketHistory:
        data = await self._get_json(
            f"/coins/{coin_id}/market_chart", {"vs_currency": "usd", "days": days}
        )
        prices = self._proc.points_from_pairs((data or {}).get("prices") or [])
        if not prices:
            raise ProviderError(self.name, f"无历史价格: {coin_id}")
        return MarketHistory(
            coin_id=coin_id,
            prices=prices,
            market_caps=self._proc.points_from_pairs(data.get("market_caps") or []),
            volumes=self._proc.points_from_pairs(data.get("total_volumes") or []),
        )

    async def get_global_metrics(self) -> Dict[str, float]:
        data = (await self._get_json("/global") or {}).get("data") or {}
        if not data:
            raise ProviderError(self.name, "全局市场数据为空")
        shares = data.get("market_cap_percentage") or {}
        return {
            "total_market_cap_usd": float((data.get("total_market_cap") or {}).get("usd") or 0),
            "total_volume_usd": float((data.get("total_volume") or {}).get("usd") or 0),
            "btc_dominance": float(shares.get("btc") or 0),
            "eth_dominance": float(shares.get("eth") or 0),
        }

    def _map_market(self, item: Dict[str, Any]) -> CryptoCurrency:
        return CryptoCurrency(
            id=item["id"],
            symbol=item.get("symbol") or "",
            name=item.get("name") or "",
            current_price=item.get("current_price") or 0,
            market_cap=item.get("market_cap") or 0,
            market_cap_rank=item.get("market_cap_rank"),
            volume_24h=item.get("total_volume") or 0,
            price_change_percentage_24h=item.get("price_change_percentage_24h"),
            price_change_percentage_7d=item.get("price_change_percentage_7d_in_currency"),
            circulating_supply=item.get("circulating_supply"),
            max_supply=item.get("max_supply"),
            all_time_high=item.get("ath"),
            all_time_high_date=item.get("ath_date"),
            image_url=item.get("image") or "",
            last_updated=item.get("last_updated"),
        )

    def _map_detail(self, data: Dict[str, Any]) -> CryptoCurrencyDetail:
        md = data.get("market_data") or {}
        links = data.get("links") or {}

        def usd(field: str) -> Optional[float]:
            return (md.get(field) or {}).get("usd")

        twitter = links.get("twitter_screen_name")
        facebook = links.get("facebook_username")
        return CryptoCurrencyDetail(
            id=data["id"],
            symbol=data.get("symbol") or "",
            name=data.get("name") or "",
            current_price=usd("current_price") or 0,
            market_cap=usd("market_cap") or 0,
            market_cap_rank=data.get("market_cap_rank"),
            volume_24h=usd("total_volume") or 0,
            price_change_percentage_24h=md.get("price_change_percentage_24h"),
            price_change_percentage_7d=md.get("price_change_percentage_7d"),
            circulating_supply=md.get("circulating_supply"),
            max_supply=md.get("max_supply"),
            total_supply=md.get("total_supply"),
            all_time_high=usd("ath"),
            all_time_high_date=(md.get("ath_date") or {}).get("usd"),
            all_time_low=usd("atl"),
            all_time_low_date=(md.get("atl_date") or {}).get("usd"),
            high_24h=usd("high_24h"),
            low_24h=usd("low_24h"),
            image_url=(data.get("image") or {}).get("large") or "",
            last_updated=data.get("last_updated"),
            description=(data.get("description") or {}).get("en") or "",
            homepage=_first(links.get("homepage")),
            whitepaper=links.get("whitepaper") or None,
            blockchain_site=_first(links.get("blockchain_site")),
            twitter=f"https://twitter.com/{twitter}" if twitter else None,
            facebook=f"https://facebook.com/{facebook}" if facebook else None,
            subreddit=links.get("subreddit_url") or None,
            hashing_algorithm=data.get("hashing_algorithm"),
            genesis_date=data.get("genesis_date"),
            categories=[c for c in data.get("categories") or [] if c],
            sentiment_votes_up_percentage=data.get("sentiment_votes_up_percentage"),
            sentiment_votes_down_percentage=data.get("sentiment_votes_down_percentage"),
        )


# ── CoinCap ───────────────────────────────────────────────

def coincap_interval(days: int) -> str:
    if days <= 1:
        return "m5"
    if days <= 7:
        return "h1"
    if days <= 30:
        return "h6"
    return "d1"


class CoinCapProvider(_HttpProvider):
    name = "coincap"

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: CryptoServiceSettings,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(client, settings.COINCAP_BASE_URL, clock=clock)
        self._api_key = settings.COINCAP_API_KEY

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}

    async def get_top_coins(self, limit: int) -> List[CryptoCurrency]:
        data = await self._get_json("/assets", {"limit": limit})
        coins = [self._map_asset(item) for item in (data or {}).get("data") or []]
        if not coins:
            raise ProviderError(self.name, "币种列表为空")
        return coins

    async def get_coin_data(self, coin_id: str) -> CryptoCurrencyDetail:
        item = await self._get_asset(coin_id)
        coin = self._map_asset(item)
        return CryptoCurrencyDetail(
            **coin.model_dump(),
            total_supply=_float(item.get("supply")),
            blockchain_site=item.get("explorer") or None,
        )

    async def get_market_chart(self, coin_id: str, days: int) -> MarketHistory:
        end = int(time.time() * 1000)
        start = end - days * _MS_PER_DAY
        data = await self._get_json(f"/assets/{coin_id}/history", {
            "interval": coincap_interval(days),
            "start": start,
            "end": end,
        })
        rows = (data or {}).get("data") or []
        prices = self._proc.points_from_pairs((row.get("time"), _float(row.get("priceUsd"))) for row in rows)
        if not prices:
            raise ProviderError(self.name, f"无历史价格: {coin_id}")

        # 市值历史 = 价格 × 当前流通量（估算值）
        market_caps = []
        try:
            supply = _float((await self._get_asset(coin_id)).get("supply"))
        except ProviderError as exc:
            logger.warning(f"CoinCap 流通量获取失败，跳过市值估算: {exc}")
            supply = None
        if supply:
            market_caps = self._proc.points_from_pairs((p.timestamp, p.price * supply) for p in prices)

        return MarketHistory(coin_id=coin_id, prices=prices, market_caps=market_caps, volumes=[])

    async def _get_asset(self, coin_id: str) -> Dict[str, Any]:
        item = (await self._get_json(f"/assets/{coin_id}") or {}).get("data")
        if not item:
            raise ProviderError(self.name, f"未找到币种: {coin_id}")
        return item

    def _map_asset(self, item: Dict[str, Any]) -> CryptoCurrency:
        symbol = item.get("symbol") or ""
        rank = _float(item.get("rank"))
        return CryptoCurrency(
            id=item["id"],
            symbol=symbol,
            name=item.get("name") or "",
            current_price=_float(item.get("priceUsd")) or 0,
            market_cap=_float(item.get("marketCapUsd")) or 0,
            market_cap_rank=int(rank) if rank is not None else None,
            volume_24h=_float(item.get("volumeUsd24Hr")) or 0,
            price_change_percentage_24h=_float(item.get("changePercent24Hr")),
            circulating_supply=_float(item.get("supply")),
            max_supply=_float(item.get("maxSupply")),
            image_url=f"https://assets.coincap.io/assets/icons/{symbol.lower()}@2x.png",
        )


# ── Yahoo Finance ─────────────────────────────────────────

_YAHOO_TOP_SYMBOLS = [
    "BTC-USD", "ETH-USD", "BNB-USD", "SOL-USD", "XRP-USD",
    "ADA-USD", "DOGE-USD", "AVAX-USD", "DOT-USD", "TRX-USD",
]


def to_yahoo_symbol(coin_id: str) -> str:
    return f"{coin_id.upper()}-USD"


def yahoo_interval(days: int) -> str:
    if days <= 7:
        return "1h"
    if days <= 90:
        return "1d"
    return "1wk"


class YahooFinanceProvider:
    """通过 yfinance 获取行情；同步调用放到工作线程执行"""

    name = "yahoo"

    def __init__(self, ticker_factory: Callable[[str], Any] = yf.Ticker):
        self._ticker = ticker_factory
        self._proc = ProcessingLayer()

    async def get_top_coins(self, limit: int) -> List[CryptoCurrency]:
        symbols = _YAHOO_TOP_SYMBOLS[:limit]
        coins = []
        for symbol in symbols:
            try:
                coin = await asyncio.to_thread(self._quote, symbol)
            except Exception as exc:
                logger.warning(f"Yahoo 行情获取失败: {symbol}: {exc}")
                continue
            if coin is not None:
                coins.append(coin)
        if not coins:
            raise ProviderError(self.name, "币种列表为空")
        return coins

    async def get_coin_data(self, coin_id: str) -> CryptoCurrencyDetail:
        symbol = to_yahoo_symbol(coin_id)
        try:
            coin = await asyncio.to_thread(self._quote, symbol)
        except Exception as exc:
            raise ProviderError(self.name, f"行情获取失败: {symbol}: {exc}") from exc
        if coin is None:
            raise ProviderError(self.name, f"未找到币种: {symbol}")
        return CryptoCurrencyDetail(**coin.model_dump())

    async def get_market_chart(self, coin_id: str, days: int) -> MarketHistory:
        symbol = to_yahoo_symbol(coin_id)
        try:
            df = await asyncio.to_thread(self._history, symbol, days)
        except Exception as exc:
            raise ProviderError(self.name, f"历史数据获取失败: {symbol}: {exc}") from exc

        prices = self._proc.points_from_frame(df, "Close")
        if not prices:
            raise ProviderError(self.name, f"无历史价格: {symbol}")
        return MarketHistory(
            coin_id=coin_id,
            symbol=symbol.split("-")[0],
            prices=prices,
            market_caps=[],
            volumes=self._proc.points_from_frame(df, "Volume"),
        )

    # ── 同步调用（工作线程） ───────────────────────────────

    def _quote(self, symbol: str) -> Optional[CryptoCurrency]:
        df = self._ticker(symbol).history(period="5d", interval="1d")
        if df is None or df.empty:
            return None
        closes = df["Close"].dropna()
        if closes.empty:
            return None

        price = float(closes.iloc[-1])
        change = None
        if len(closes) > 1 and closes.iloc[-2]:
            change = (price - float(closes.iloc[-2])) / float(closes.iloc[-2]) * 100
        volume = float(df["Volume"].iloc[-1]) if "Volume" in df.columns else 0.0

        base = symbol.split("-")[0]
        return CryptoCurrency(
            id=base.lower(),
            symbol=base,
            name=base,
            current_price=price,
            volume_24h=volume,
            price_change_percentage_24h=change,
            image_url=f"https://assets.coincap.io/assets/icons/{base.lower()}@2x.png",
        )

    def _history(self, symbol: str, days: int) -> pd.DataFrame:
        end = pd.Timestamp.now(tz="UTC")
        start = end - pd.Timedelta(days=days)
        return self._ticker(symbol).history(
            start=start.strftime("%Y-%m-%d"),
            end=(end + pd.Timedelta(days=1)).strftime("%Y-%m-%d"),
            interval=yahoo_interval(days),
        )
