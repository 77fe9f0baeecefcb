"""
投资建议路由
POST /api/recommendation                  - 生成投资建议
GET  /api/recommendation/market-snapshot  - 市场快照
GET  /api/recommendation/{coin_id}        - 单个币种的投资建议
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Path
from pydantic.alias_generators import to_camel

from cryptogpt.dependencies import get_recommendation_engine
from cryptogpt.models.crypto import AssetRecommendation, MarketSnapshot, RecommendationRequest
from cryptogpt.services.recommendation_service import RecommendationEngine

router = APIRouter(prefix="/api/recommendation", tags=["投资建议"])


def camelize(value: Any) -> Any:
    """递归地把 LLM 输出中的字典键转换为 camelCase"""
    if isinstance(value, dict):
        return {to_camel(str(key)): camelize(item) for key, item in value.items()}
    if isinstance(value, list):
        return [camelize(item) for item in value]
    return value


@router.post("")
async def generate_recommendations(
    body: RecommendationRequest,
    engine: RecommendationEngine = Depends(get_recommendation_engine),
) -> Dict[str, Any]:
    """由 LLM 生成结构化投资建议"""
    result = await engine.generate_recommendations(body.query, body.risk_profile)
    return camelize(result)


@router.get("/market-snapshot", response_model=MarketSnapshot)
async def get_market_snapshot(engine: RecommendationEngine = Depends(get_recommendation_engine)):
    return await engine.get_market_snapshot()


@router.get("/{coin_id}", response_model=AssetRecommendation)
async def get_asset_recommendation(
    coin_id: str = Path(..., min_length=2, max_length=50, description="币种 ID，例如 bitcoin"),
    engine: RecommendationEngine = Depends(get_recommendation_engine),
):
    """技术分析 + 新闻情绪得出的 buy / hold / sell 建议"""
    return await engine.get_asset_recommendation(coin_id)
