"""
FastAPI 依赖注入
服务实例在应用生命周期中创建并挂在 app.state 上，路由通过以下函数获取；
测试中使用 app.dependency_overrides 替换
"""

from typing import Optional

from fastapi import Request
from redis.asyncio import Redis

from cryptogpt.layers.cache import LocalCacheLayer
from cryptogpt.services.crypto_service import CryptoDataService
from cryptogpt.services.llm_service import OllamaLlmService
from cryptogpt.services.news_service import NewsService
from cryptogpt.services.recommendation_service import RecommendationEngine


def get_cache(request: Request) -> LocalCacheLayer:
    return request.app.state.cache


def get_redis(request: Request) -> Optional[Redis]:
    return request.app.state.redis


def get_crypto_service(request: Request) -> CryptoDataService:
    return request.app.state.crypto_service


def get_news_service(request: Request) -> NewsService:
    return request.app.state.news_service


def get_llm_service(request: Request) -> OllamaLlmService:
    return request.app.state.llm_service


def get_recommendation_engine(request: Request) -> RecommendationEngine:
    return request.app.state.recommendation_engine
