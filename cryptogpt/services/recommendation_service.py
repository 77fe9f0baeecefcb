"""
投资建议引擎
汇总行情数据构造提示词，由 LLM 生成结构化的投资建议；
单个币种的建议由技术分析与新闻情绪决定，LLM 只负责说明文字
"""

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import TypeAdapter

from cryptogpt.config import CryptoServiceSettings
from cryptogpt.layers.analysis import BEARISH, BULLISH
from cryptogpt.layers.cache import LocalCacheLayer, make_key
from cryptogpt.models.crypto import (
    AssetRecommendation,
    CryptoCurrency,
    CryptoCurrencyDetail,
    CryptoNewsItem,
    MarketOverview,
    MarketSnapshot,
    RiskProfile,
    TechnicalAnalysis,
)
from cryptogpt.services.crypto_service import CryptoDataService, DataUnavailableError
from cryptogpt.services.llm_service import LlmError, OllamaLlmService
from cryptogpt.services.news_service import NewsService

logger = logging.getLogger(__name__)

_SNAPSHOT_SCHEMA = TypeAdapter(MarketSnapshot)
_ASSET_SCHEMA = TypeAdapter(AssetRecommendation)

_SENTIMENT_COINS = 10
_ASSET_NEWS_LIMIT = 3
_ASSET_ANALYSIS_DAYS = 30

_RISK_GUIDANCE = {
    RiskProfile.CONSERVATIVE: (
        "The investor is Conservative: focus on established cryptocurrencies (BTC, ETH) "
        "and stablecoins, and emphasize capital preservation."
    ),
    RiskProfile.MODERATE: (
        "The investor is Moderate: recommend a balanced mix of established and mid-cap "
        "cryptocurrencies with some growth potential and managed risk."
    ),
    RiskProfile.AGGRESSIVE: (
        "The investor is Aggressive: smaller cap cryptocurrencies with higher growth "
        "potential are acceptable, as is higher volatility."
    ),
}

_SYSTEM_PROMPT = """You are a crypto investment advisor with expertise in cryptocurrency markets.
Provide personalized investment recommendations based on the user's query and risk profile.
{guidance}

Base your recommendations on the market data provided in the prompt, price trends and trading
volume, and the user's specific goals.

Your response must be a valid JSON object with the following structure:
{{
  "market_analysis": "string",
  "recommendations": [
    {{"symbol": "string", "name": "string", "rationale": "string", "allocation": number}}
  ],
  "strategy": "string",
  "risk_assessment": "string",
  "timeframe": "string"
}}"""

_PROMPT = """I need crypto investment recommendations based on the following:

USER QUERY: {query}
RISK PROFILE: {risk_profile}

CURRENT MARKET DATA:
Top 50 Cryptocurrencies:
{top_coins}
Top Gainers (24h):
{top_gainers}
Top Losers (24h):
{top_losers}
Market Metrics:
- Total Market Cap: ${total_market_cap}
- 24h Trading Volume: ${total_volume}
- BTC Dominance: {btc_dominance:.2f}%

Provide a market analysis summary, 3-5 recommended cryptocurrencies with rationale and
allocation percentages, an investment strategy, a risk assessment and a timeframe."""


def format_amount(amount: float) -> str:
    """金额缩写：K / M / B / T"""
    for threshold, suffix in ((1e12, "T"), (1e9, "B"), (1e6, "M"), (1e3, "K")):
        if amount >= threshold:
            return f"{amount / threshold:.2f}{suffix}"
    return f"{amount:.2f}"


def format_coins(coins: List[CryptoCurrency]) -> str:
    return "\n".join(
        f"- {c.name} ({c.symbol}): ${c.current_price:.2f}, "
        f"24h Change: {(c.price_change_percentage_24h or 0):.2f}%, "
        f"Market Cap: ${format_amount(c.market_cap)}"
        for c in coins
    )


def recommendation_key(query: str, risk_profile: RiskProfile) -> str:
    digest = hashlib.md5(query.lower().encode("utf-8")).hexdigest()[:10]
    return make_key("recommendation", digest, risk_profile.value)


# ── 市场情绪 / 单币种建议 ─────────────────────────────────

_SENTIMENT_THRESHOLDS = (
    (5.0, "very bullish"),
    (2.0, "bullish"),
    (0.5, "slightly bullish"),
    (-0.5, "neutral"),
    (-2.0, "slightly bearish"),
    (-5.0, "bearish"),
)


def market_sentiment(average_change: float) -> str:
    """按前排币种 24h 平均涨跌幅（%）划分市场情绪"""
    for threshold, label in _SENTIMENT_THRESHOLDS:
        if average_change > threshold:
            return label
    return "very bearish"


def news_sentiment(news: Sequence[CryptoNewsItem]) -> float:
    """新闻情绪得分 0.0 ~ 1.0，中性新闻按 0.5 计；无新闻时为 0.5"""
    if not news:
        return 0.5
    positive = sum(1 for n in news if n.sentiment.lower() == "positive")
    negative = sum(1 for n in news if n.sentiment.lower() == "negative")
    neutral = len(news) - positive - negative
    return (positive + neutral * 0.5) / len(news)


def decide_recommendation(
    analysis: Optional[TechnicalAnalysis], news_score: float
) -> Tuple[str, float]:
    """
    综合信号给出 buy / hold / sell 及置信度

    技术面看多 / 看空时置信度 0.7；新闻情绪偏正（> 0.6）或偏负（< 0.4）且
    不与技术面相反时，按情绪强度覆盖结论。没有技术分析时固定为 hold / 0.5
    """
    if analysis is None:
        return "hold", 0.5

    recommendation, confidence = "hold", 0.5
    overall = analysis.signals.get("Overall", "")
    if overall.startswith(BULLISH):
        recommendation, confidence = "buy", 0.7
    elif overall.startswith(BEARISH):
        recommendation, confidence = "sell", 0.7

    if news_score > 0.6 and recommendation != "sell":
        recommendation, confidence = "buy", 0.5 + (news_score - 0.5) / 2
    elif news_score < 0.4 and recommendation != "buy":
        recommendation, confidence = "sell", 0.5 + (0.5 - news_score) / 2
    return recommendation, round(confidence, 4)


def _interpret_rsi(rsi: float) -> str:
    if rsi > 70:
        return "Overbought"
    if rsi < 30:
        return "Oversold"
    return "Neutral"


def build_asset_prompt(
    coin: CryptoCurrencyDetail,
    analysis: Optional[TechnicalAnalysis],
    news: Sequence[CryptoNewsItem],
    recommendation: str,
    confidence: float,
) -> str:
    lines = [
        f"Generate an investment recommendation for {coin.name} ({coin.symbol}) based on the following data:",
        "",
        f"Current price: ${coin.current_price:.2f}",
        f"24h price change: {(coin.price_change_percentage_24h or 0):.2f}%",
        f"7d price change: {(coin.price_change_percentage_7d or 0):.2f}%",
        f"Market cap: ${format_amount(coin.market_cap)}",
        f"Volume: ${format_amount(coin.volume_24h)}",
    ]
    if analysis is not None:
        rsi = analysis.latest_values.get("RSI14", 50.0)
        macd = analysis.signals.get("MACD", "")
        macd_view = "Bullish" if BULLISH in macd else "Bearish" if BEARISH in macd else "Neutral"
        lines += [
            "",
            "Technical indicators:",
            f"- RSI: {rsi:.2f} ({_interpret_rsi(rsi)})",
            f"- MACD: {macd_view} signal",
            f"- Overall signal: {recommendation.upper()} with {confidence:.0%} confidence",
        ]
    if news:
        lines += ["", "Recent news:"] + [f"- {n.title} ({n.source})" for n in news]
    lines += [
        "",
        "Based on this data:",
        "1. Provide a concise investment analysis for this asset (3-4 sentences)",
        "2. Explain key factors affecting its price",
        "3. Provide a clear recommendation: BUY, HOLD, or SELL",
        "4. Risk assessment (low, medium, high)",
    ]
    return "\n".join(lines)


class RecommendationEngine:
    """投资建议业务服务"""

    def __init__(
        self,
        crypto: CryptoDataService,
        llm: OllamaLlmService,
        news: NewsService,
        cache: LocalCacheLayer,
        settings: CryptoServiceSettings,
    ):
        self._crypto = crypto
        self._llm = llm
        self._news = news
        self._cache = cache
        self._settings = settings

    async def generate_recommendations(
        self, query: str, risk_profile: RiskProfile = RiskProfile.MODERATE
    ) -> Dict[str, Any]:
        """
        生成投资建议（按查询与风险偏好缓存）

        LLM 或上游失败时异常向上传播
        """

        async def fetch() -> Dict[str, Any]:
            top_coins = await self._crypto.get_top_coins(50)
            overview = await self._crypto.get_market_overview()
            prompt = self.build_prompt(query, risk_profile, top_coins, overview)
            system = _SYSTEM_PROMPT.format(guidance=_RISK_GUIDANCE[risk_profile])

            result = await self._llm.generate_structured(prompt, system=system)
            result["timestamp"] = datetime.now(tz=timezone.utc).isoformat()
            result["risk_profile"] = risk_profile.value
            logger.info(f"投资建议生成完成: {query[:50]}（{risk_profile.value}）")
            return result

        return await self._cache.get_or_create(
            recommendation_key(query, risk_profile),
            self._settings.RECOMMENDATION_CACHE_TTL,
            fetch,
        )

    def build_prompt(
        self,
        query: str,
        risk_profile: RiskProfile,
        top_coins: List[CryptoCurrency],
        overview: MarketOverview,
    ) -> str:
        metrics = overview.market_metrics
        return _PROMPT.format(
            query=query,
            risk_profile=risk_profile.value,
            top_coins=format_coins(top_coins),
            top_gainers=format_coins(overview.top_gainers),
            top_losers=format_coins(overview.top_losers),
            total_market_cap=format_amount(metrics.get("total_market_cap_usd", 0.0)),
            total_volume=format_amount(metrics.get("total_volume_usd", 0.0)),
            btc_dominance=metrics.get("btc_dominance", 0.0),
        )

    async def get_market_snapshot(self) -> MarketSnapshot:
        """市场快照：全局指标 + 涨跌榜 + 成交量榜 + 市场情绪 + 数据来源"""

        async def fetch() -> MarketSnapshot:
            overview = await self._crypto.get_market_overview()
            leaders = await self._crypto.get_top_coins(_SENTIMENT_COINS)
            average_change = (
                sum(c.price_change_percentage_24h or 0.0 for c in leaders) / len(leaders)
                if leaders else 0.0
            )
            return MarketSnapshot(
                market_metrics=overview.market_metrics,
                top_gainers=overview.top_gainers,
                top_losers=overview.top_losers,
                top_by_volume=overview.top_by_volume,
                market_sentiment=market_sentiment(average_change),
                timestamp=datetime.now(tz=timezone.utc),
                data_source=self._crypto.current_data_source(),
            )

        return await self._cache.get_or_create(
            make_key("market_snapshot"),
            self._settings.SNAPSHOT_CACHE_TTL,
            fetch,
            _SNAPSHOT_SCHEMA,
        )

    async def get_asset_recommendation(self, coin_id: str) -> AssetRecommendation:
        """
        单个币种的投资建议：技术分析 + 新闻情绪确定结论，LLM 生成说明

        没有币种数据时返回 hold / 0 且不缓存；LLM 不可用时说明退回为模板文本
        """
        try:
            return await self._cache.get_or_create(
                make_key("recommendation", "asset", coin_id),
                self._settings.RECOMMENDATION_CACHE_TTL,
                lambda: self._build_asset_recommendation(coin_id),
                _ASSET_SCHEMA,
            )
        except DataUnavailableError as exc:
            logger.warning(f"无法生成币种建议: {exc}")
            return AssetRecommendation(
                coin_id=coin_id,
                generated_at=datetime.now(tz=timezone.utc),
                recommendation="hold",
                confidence=0.0,
                summary=f"Could not retrieve data for coin {coin_id}.",
            )

    async def _build_asset_recommendation(self, coin_id: str) -> AssetRecommendation:
        coin = await self._crypto.get_coin_data(coin_id)
        if coin is None:
            raise DataUnavailableError(f"无币种数据: {coin_id}")

        analysis = await self._crypto.get_technical_analysis(coin_id, _ASSET_ANALYSIS_DAYS)
        news = await self._news.get_coin_news(coin_id, symbol=coin.symbol, limit=_ASSET_NEWS_LIMIT)
        recommendation, confidence = decide_recommendation(analysis, news_sentiment(news))

        prompt = build_asset_prompt(coin, analysis, news, recommendation, confidence)
        try:
            summary = (await self._llm.generate(prompt)).strip()
        except LlmError as exc:
            logger.warning(f"LLM 不可用，使用模板说明: {exc}")
            summary = ""
        if not summary:
            summary = (
                f"Technical analysis suggests a {recommendation} recommendation "
                f"with {confidence:.0%} confidence."
            )

        logger.info(f"币种建议生成完成: {coin_id} → {recommendation}（{confidence:.0%}）")
        return AssetRecommendation(
            coin_id=coin_id,
            coin_name=coin.name,
            coin_symbol=coin.symbol,
            generated_at=datetime.now(tz=timezone.utc),
            recommendation=recommendation,
            confidence=confidence,
            summary=summary,
        )
