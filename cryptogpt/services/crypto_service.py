"""
多数据源行情服务
整合数据获取、缓存、处理、分析四层，对外提供统一的行情访问接口。

数据源按 CoinGecko → CoinCap → Yahoo Finance 顺序尝试，每个数据源的结果
以 <provider>:<resource>:<args> 为键单独缓存；某个数据源失败时记录日志并
尝试下一个。
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from pydantic import TypeAdapter

from cryptogpt.config import CryptoServiceSettings
from cryptogpt.layers.acquisition import CoinCapProvider, CoinGeckoProvider, ProviderError, YahooFinanceProvider
from cryptogpt.layers.analysis import AnalysisLayer
from cryptogpt.layers.cache import LocalCacheLayer, make_key
from cryptogpt.layers.processing import ProcessingLayer
from cryptogpt.models.crypto import (
    CryptoCurrency,
    CryptoCurrencyDetail,
    IndicatorInfo,
    MarketHistory,
    MarketOverview,
    TechnicalAnalysis,
)

logger = logging.getLogger(__name__)

_TOP_COINS_SCHEMA = TypeAdapter(List[CryptoCurrency])
_COIN_DETAIL_SCHEMA = TypeAdapter(CryptoCurrencyDetail)
_HISTORY_SCHEMA = TypeAdapter(MarketHistory)
_OVERVIEW_SCHEMA = TypeAdapter(MarketOverview)
_ANALYSIS_SCHEMA = TypeAdapter(TechnicalAnalysis)

_OVERVIEW_SIZE = 10


class DataUnavailableError(RuntimeError):
    """所有数据源均无数据"""


class CryptoDataService:
    """行情数据业务服务"""

    def __init__(
        self,
        cache: LocalCacheLayer,
        coingecko: CoinGeckoProvider,
        coincap: CoinCapProvider,
        yahoo: YahooFinanceProvider,
        settings: CryptoServiceSettings,
        analysis: Optional[AnalysisLayer] = None,
        processing: Optional[ProcessingLayer] = None,
    ):
        self._cache = cache
        self._coingecko = coingecko
        self._providers = [coingecko, coincap, yahoo]
        self._settings = settings
        self._proc = processing if processing is not None else ProcessingLayer()
        self._analysis = analysis if analysis is not None else AnalysisLayer(self._proc)
        self._current_source = coingecko.name

    def current_data_source(self) -> str:
        """最近一次成功提供数据的数据源"""
        return self._current_source

    def available_indicators(self) -> List[IndicatorInfo]:
        return self._analysis.available_indicators()

    async def _first_available(
        self,
        resource: str,
        args: Sequence[Any],
        call: Callable[[Any], Awaitable[Any]],
        ttl: Callable[[Any], int],
        schema: Optional[TypeAdapter] = None,
    ) -> Optional[Any]:
        """按优先级依次尝试数据源，返回第一个成功的结果"""
        for provider in self._providers:
            key = make_key(provider.name, resource, *args)
            try:
                result = await self._cache.get_or_create(
                    key, ttl(provider), lambda p=provider: call(p), schema
                )
            except Exception as exc:
                logger.warning(f"{resource} 获取失败（来源：{provider.name}）: {exc}")
                continue
            self._current_source = provider.name
            return result
        logger.error(f"所有数据源均无法提供 {resource}: {list(args)}")
        return None

    # ── 币种 ──────────────────────────────────────────────

    async def get_top_coins(self, limit: int = 10) -> List[CryptoCurrency]:
        """按市值排序的前 limit 个币种；全部数据源失败时返回空列表"""
        coins = await self._first_available(
            "top_coins",
            (limit,),
            lambda p: p.get_top_coins(limit),
            lambda p: self._settings.TOP_COINS_CACHE_TTL,
            _TOP_COINS_SCHEMA,
        )
        return coins or []

    async def get_coin_data(self, coin_id: str) -> Optional[CryptoCurrencyDetail]:
        return await self._first_available(
            "coin_data",
            (coin_id,),
            lambda p: p.get_coin_data(coin_id),
            lambda p: self._settings.COIN_DATA_CACHE_TTL,
            _COIN_DETAIL_SCHEMA,
        )

    # ── 历史行情 ──────────────────────────────────────────

    def _chart_ttl(self, provider: Any, days: int) -> int:
        if provider.name == YahooFinanceProvider.name:
            return 1800 if days <= 7 else 21600
        return 300 if days <= 1 else 3600

    async def get_market_chart(
        self,
        coin_id: str,
        days: int = 30,
        indicators: Optional[Union[str, Sequence[str]]] = None,
    ) -> Optional[MarketHistory]:
        """
        获取历史行情，可附带技术指标序列

        Args:
            coin_id: 币种 ID
            days: 展示窗口（天）
            indicators: 指标名称，如 "SMA50,RSI14" 或 ["SMA50", "RSI14"]

        Raises:
            ValueError: 指标名称不受支持
        """
        if isinstance(indicators, str):
            indicators = indicators.split(",")
        specs = self._analysis.parse_indicators(indicators) if indicators else {}
        fetch_days = self._analysis.required_days(specs, days)

        history = await self._first_available(
            "market_chart",
            (coin_id, fetch_days),
            lambda p: p.get_market_chart(coin_id, fetch_days),
            lambda p: self._chart_ttl(p, fetch_days),
            _HISTORY_SCHEMA,
        )
        if history is None or not specs:
            return history

        # 缓存中的对象保持不变，指标挂在副本上
        series = self._analysis.compute_indicators(history.prices, specs)
        enriched = history.model_copy(update={"indicator_series": series})
        if fetch_days > days:
            enriched = self._proc.trim_history(enriched, days)
        return enriched

    # ── 市场概览 ──────────────────────────────────────────

    async def get_market_overview(self) -> MarketOverview:
        """
        市场概览：涨幅榜 / 跌幅榜 / 成交量榜 + 全局指标

        优先使用 CoinGecko 前 100 名；失败时基于 get_top_coins(10) 降级，
        此时不含全局指标
        """
        try:
            overview = await self._cache.get_or_create(
                make_key(self._coingecko.name, "market_overview"),
                self._settings.MARKET_OVERVIEW_CACHE_TTL,
                self._fetch_overview,
                _OVERVIEW_SCHEMA,
            )
            self._current_source = self._coingecko.name
            return overview
        except Exception as exc:
            logger.warning(f"市场概览获取失败（来源：{self._coingecko.name}），降级为前 10 名: {exc}")

        coins = await self.get_top_coins(_OVERVIEW_SIZE)
        return build_overview(coins, {})

    async def _fetch_overview(self) -> MarketOverview:
        coins = await self._coingecko.get_top_coins(100)
        try:
            metrics = await self._coingecko.get_global_metrics()
        except ProviderError as exc:
            logger.warning(f"全局市场指标获取失败: {exc}")
            metrics = {}
        return build_overview(coins, metrics)

    # ── 技术分析 ──────────────────────────────────────────

    async def get_technical_analysis(self, coin_id: str, days: int = 30) -> Optional[TechnicalAnalysis]:
        """完整技术分析；没有任何数据源提供价格历史时返回 None"""

        async def fetch() -> TechnicalAnalysis:
            history = await self.get_market_chart(coin_id, days)
            if history is None or not history.prices:
                raise DataUnavailableError(f"无价格历史: {coin_id}")
            return self._analysis.analyze(coin_id, history.prices, days)

        try:
            return await self._cache.get_or_create(
                make_key("technical", coin_id, days),
                self._settings.TECHNICAL_CACHE_TTL,
                fetch,
                _ANALYSIS_SCHEMA,
            )
        except DataUnavailableError as exc:
            logger.warning(f"技术分析不可用: {exc}")
            return None


def build_overview(coins: List[CryptoCurrency], metrics: Dict[str, float]) -> MarketOverview:
    """按 24h 涨跌幅与成交量排序生成概览（缺失的涨跌幅按 0 处理）"""

    def change(coin: CryptoCurrency) -> float:
        return coin.price_change_percentage_24h or 0.0

    return MarketOverview(
        top_gainers=sorted(coins, key=change, reverse=True)[:_OVERVIEW_SIZE],
        top_losers=sorted(coins, key=change)[:_OVERVIEW_SIZE],
        top_by_volume=sorted(coins, key=lambda c: c.volume_24h, reverse=True)[:_OVERVIEW_SIZE],
        market_metrics=metrics,
    )
