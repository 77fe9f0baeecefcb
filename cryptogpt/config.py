"""
行情服务配置模块
支持从环境变量 / .env 读取配置；未配置 REDIS_URL 时仅使用进程内缓存
"""

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CryptoServiceSettings(BaseSettings):
    """行情服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8001)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── Redis 配置（连接串为空则禁用分布式缓存） ─────────────
    REDIS_URL: str = Field(default="")
    REDIS_MAX_CONNECTIONS: int = Field(default=20)
    REDIS_SOCKET_TIMEOUT: float = Field(default=5.0)

    @property
    def REDIS_ENABLED(self) -> bool:
        return bool(self.REDIS_URL.strip())

    # ── 上游数据源配置 ─────────────────────────────────────
    COINGECKO_BASE_URL: str = Field(default="https://api.coingecko.com/api/v3")
    COINGECKO_API_KEY: str = Field(default="")
    COINGECKO_RATE_LIMIT_RESET: int = Field(default=60)  # 429 之后的冷却时间（秒）
    COINCAP_BASE_URL: str = Field(default="https://api.coincap.io/v2")
    COINCAP_API_KEY: str = Field(default="")
    NEWS_BASE_URL: str = Field(default="https://min-api.cryptocompare.com/data/v2/news/")
    NEWS_API_KEY: str = Field(default="")
    HTTP_TIMEOUT: float = Field(default=30.0)
    USER_AGENT: str = Field(default="CryptoGPT")

    # ── LLM（Ollama）配置 ─────────────────────────────────
    OLLAMA_BASE_URL: str = Field(default="http://localhost:11434/api")
    OLLAMA_MODEL: str = Field(default="llama2")
    OLLAMA_TEMPERATURE: float = Field(default=0.7)
    OLLAMA_TIMEOUT: float = Field(default=120.0)

    # ── 缓存 TTL（秒） ────────────────────────────────────
    TOP_COINS_CACHE_TTL: int = Field(default=300)
    COIN_DATA_CACHE_TTL: int = Field(default=900)
    MARKET_OVERVIEW_CACHE_TTL: int = Field(default=300)
    TECHNICAL_CACHE_TTL: int = Field(default=3600)
    NEWS_CACHE_TTL: int = Field(default=1800)
    RECOMMENDATION_CACHE_TTL: int = Field(default=1800)
    SNAPSHOT_CACHE_TTL: int = Field(default=300)

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")


@lru_cache
def get_settings() -> CryptoServiceSettings:
    """获取全局配置（单例）"""
    return CryptoServiceSettings()


settings = get_settings()
