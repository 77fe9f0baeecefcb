"""
行情数据路由
GET /api/coin                             - 市值前 N 名
GET /api/coin/overview                    - 市场概览
GET /api/coin/source                      - 当前数据源
GET /api/coin/technical-indicators        - 可用技术指标
GET /api/coin/{coin_id}                   - 币种详情
GET /api/coin/{coin_id}/chart             - 历史行情（可附带指标）
GET /api/coin/{coin_id}/technical-analysis - 技术分析
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from cryptogpt.dependencies import get_crypto_service
from cryptogpt.models.crypto import (
    CryptoCurrency,
    CryptoCurrencyDetail,
    IndicatorInfo,
    MarketHistory,
    MarketOverview,
    TechnicalAnalysis,
)
from cryptogpt.services.crypto_service import CryptoDataService

router = APIRouter(prefix="/api/coin", tags=["行情数据"])


@router.get("", response_model=List[CryptoCurrency])
async def get_top_coins(
    limit: int = Query(default=10, ge=1, le=250, description="返回数量"),
    svc: CryptoDataService = Depends(get_crypto_service),
):
    """按市值排序的币种列表"""
    return await svc.get_top_coins(limit)


@router.get("/overview", response_model=MarketOverview)
async def get_market_overview(svc: CryptoDataService = Depends(get_crypto_service)):
    return await svc.get_market_overview()


@router.get("/source")
async def get_data_source(svc: CryptoDataService = Depends(get_crypto_service)):
    """最近一次提供数据的上游数据源"""
    return {"source": svc.current_data_source()}


@router.get("/technical-indicators", response_model=List[IndicatorInfo])
async def get_available_indicators(svc: CryptoDataService = Depends(get_crypto_service)):
    """可用于 chart 接口 indicators 参数的技术指标及其解读"""
    return svc.available_indicators()


@router.get("/{coin_id}", response_model=CryptoCurrencyDetail)
async def get_coin(
    coin_id: str = Path(..., min_length=2, max_length=50, description="币种 ID，例如 bitcoin"),
    svc: CryptoDataService = Depends(get_crypto_service),
):
    coin = await svc.get_coin_data(coin_id)
    if coin is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"未找到币种: {coin_id}")
    return coin


@router.get("/{coin_id}/chart", response_model=MarketHistory)
async def get_market_chart(
    coin_id: str = Path(..., min_length=2, max_length=50, description="币种 ID，例如 bitcoin"),
    days: int = Query(default=30, ge=1, le=365, description="天数"),
    indicators: Optional[str] = Query(
        default=None, description="逗号分隔的指标，例如 SMA20,EMA50,RSI14,MACD,BBANDS"
    ),
    svc: CryptoDataService = Depends(get_crypto_service),
):
    """历史价格 / 市值 / 成交量，可附带技术指标序列"""
    try:
        history = await svc.get_market_chart(coin_id, days, indicators)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if history is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"无历史行情: {coin_id}")
    return history


@router.get("/{coin_id}/technical-analysis", response_model=TechnicalAnalysis)
async def get_technical_analysis(
    coin_id: str = Path(..., min_length=2, max_length=50, description="币种 ID，例如 bitcoin"),
    days: int = Query(default=30, ge=1, le=365),
    svc: CryptoDataService = Depends(get_crypto_service),
):
    analysis = await svc.get_technical_analysis(coin_id, days)
    if analysis is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"无法生成技术分析: {coin_id}")
    return analysis
