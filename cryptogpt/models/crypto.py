"""
行情领域模型
所有模型对外以 camelCase 序列化，内部以 snake_case 访问
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """camelCase 输出 / 同时接受字段名与别名输入"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── 币种 ──────────────────────────────────────────────────

class CryptoCurrency(CamelModel):
    id: str
    symbol: str
    name: str
    current_price: float = 0.0
    market_cap: float = 0.0
    market_cap_rank: Optional[int] = None
    volume_24h: float = Field(default=0.0, alias="volume24h")
    price_change_percentage_24h: Optional[float] = Field(default=None, alias="priceChangePercentage24h")
    price_change_percentage_7d: Optional[float] = Field(default=None, alias="priceChangePercentage7d")
    circulating_supply: Optional[float] = None
    max_supply: Optional[float] = None
    all_time_high: Optional[float] = None
    all_time_high_date: Optional[datetime] = None
    image_url: str = ""
    last_updated: Optional[datetime] = None

    @field_validator("symbol")
    @classmethod
    def _upper_symbol(cls, value: str) -> str:
        return value.upper()


class CryptoCurrencyDetail(CryptoCurrency):
    description: str = ""
    homepage: Optional[str] = None
    whitepaper: Optional[str] = None
    blockchain_site: Optional[str] = None
    twitter: Optional[str] = None
    facebook: Optional[str] = None
    subreddit: Optional[str] = None
    hashing_algorithm: Optional[str] = None
    genesis_date: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    high_24h: Optional[float] = Field(default=None, alias="high24h")
    low_24h: Optional[float] = Field(default=None, alias="low24h")
    total_supply: Optional[float] = None
    all_time_low: Optional[float] = None
    all_time_low_date: Optional[datetime] = None
    sentiment_votes_up_percentage: Optional[float] = None
    sentiment_votes_down_percentage: Optional[float] = None


# ── 历史行情 ──────────────────────────────────────────────

class PriceHistoryPoint(CamelModel):
    """单个历史数据点（timestamp 为 unix 毫秒）"""
    timestamp: int
    price: float


class IndicatorTimePoint(CamelModel):
    timestamp: int
    value: float


class MarketHistory(CamelModel):
    coin_id: str
    symbol: str = ""
    prices: List[PriceHistoryPoint] = Field(default_factory=list)
    market_caps: List[PriceHistoryPoint] = Field(default_factory=list)
    volumes: List[PriceHistoryPoint] = Field(default_factory=list)
    indicator_series: Optional[Dict[str, List[IndicatorTimePoint]]] = None


class MarketOverview(CamelModel):
    top_gainers: List[CryptoCurrency] = Field(default_factory=list)
    top_losers: List[CryptoCurrency] = Field(default_factory=list)
    top_by_volume: List[CryptoCurrency] = Field(default_factory=list)
    market_metrics: Dict[str, float] = Field(default_factory=dict)


# ── 新闻 ──────────────────────────────────────────────────

class CryptoNewsItem(CamelModel):
    id: str = ""
    title: str
    summary: str = ""
    description: str = ""
    url: str = ""
    image_url: str = ""
    source: str = ""
    published_at: Optional[datetime] = None
    sentiment: str = "neutral"
    related_coins: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


# ── 技术分析 ──────────────────────────────────────────────

class IndicatorInfo(CamelModel):
    """可请求的指标：name 为请求时使用的名称，period 省略时取 default_period"""
    name: str
    description: str
    meaning: str
    default_period: int
    example: str


class TechnicalAnalysis(CamelModel):
    coin_id: str
    timestamp: int
    period_days: int
    latest_values: Dict[str, float] = Field(default_factory=dict)
    indicators: Dict[str, List[IndicatorTimePoint]] = Field(default_factory=dict)
    signals: Dict[str, str] = Field(default_factory=dict)
    trend: str = "neutral"
    signal: str = "hold"
    strength: int = 5
    trend_analysis: str = ""
    support_levels: List[float] = Field(default_factory=list)
    resistance_levels: List[float] = Field(default_factory=list)


# ── 投资建议 ──────────────────────────────────────────────

class RiskProfile(str, Enum):
    CONSERVATIVE = "Conservative"
    MODERATE = "Moderate"
    AGGRESSIVE = "Aggressive"


class RecommendationRequest(CamelModel):
    query: str = Field(default="Investment advice for crypto", min_length=1, max_length=1000)
    risk_profile: RiskProfile = RiskProfile.MODERATE


class MarketSnapshot(CamelModel):
    market_metrics: Dict[str, float] = Field(default_factory=dict)
    top_gainers: List[CryptoCurrency] = Field(default_factory=list)
    top_losers: List[CryptoCurrency] = Field(default_factory=list)
    top_by_volume: List[CryptoCurrency] = Field(default_factory=list)
    market_sentiment: str = "neutral"
    timestamp: datetime
    data_source: str


class AssetRecommendation(CamelModel):
    """单个币种的建议；confidence 取值 0.0 ~ 1.0"""
    coin_id: str
    coin_name: str = ""
    coin_symbol: str = ""
    generated_at: datetime
    recommendation: str = "hold"
    confidence: float = 0.0
    summary: str = ""
