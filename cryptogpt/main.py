"""
CryptoGPT 行情服务
FastAPI 应用程序入口

启动方式:
    uvicorn cryptogpt.main:app --host 0.0.0.0 --port 8001
    python -m cryptogpt.main
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, List

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from cryptogpt import __version__
from cryptogpt.config import settings
from cryptogpt.connections import close_redis, create_http_client, open_redis
from cryptogpt.layers.acquisition import CoinCapProvider, CoinGeckoProvider, YahooFinanceProvider
from cryptogpt.layers.cache import build_cache_layer
from cryptogpt.models.response import ProblemResponse
from cryptogpt.routers import cache, coins, health, news, recommendation
from cryptogpt.services.crypto_service import CryptoDataService
from cryptogpt.services.llm_service import OllamaLlmService
from cryptogpt.services.news_service import NewsService
from cryptogpt.services.recommendation_service import RecommendationEngine

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子：创建连接与服务实例并挂到 app.state"""
    logger.info("=" * 60)
    logger.info(f"🚀 CryptoGPT 行情服务 v{__version__} 启动中")
    logger.info(f"   Listen    : {settings.HOST}:{settings.PORT}")
    logger.info(f"   Redis     : {'已配置' if settings.REDIS_ENABLED else '未配置（本地缓存）'}")
    logger.info(f"   Ollama    : {settings.OLLAMA_BASE_URL} ({settings.OLLAMA_MODEL})")
    logger.info("=" * 60)

    # Redis 不可用不阻断启动，降级为本地缓存
    redis = await open_redis(settings)
    http_client = create_http_client(settings)
    cache_layer = build_cache_layer(redis)

    crypto_service = CryptoDataService(
        cache_layer,
        CoinGeckoProvider(http_client, settings),
        CoinCapProvider(http_client, settings),
        YahooFinanceProvider(),
        settings,
    )
    news_service = NewsService(http_client, cache_layer, settings)
    llm_service = OllamaLlmService(http_client, settings)

    app.state.redis = redis
    app.state.http_client = http_client
    app.state.cache = cache_layer
    app.state.crypto_service = crypto_service
    app.state.news_service = news_service
    app.state.llm_service = llm_service
    app.state.recommendation_engine = RecommendationEngine(
        crypto_service, llm_service, news_service, cache_layer, settings
    )
    logger.info(f"✅ 服务就绪（缓存模式: {cache_layer.mode}）")

    yield

    logger.info("🔄 行情服务正在关闭...")
    await http_client.aclose()
    await close_redis(redis)
    logger.info("✅ 行情服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="CryptoGPT 行情服务",
    description=(
        "加密货币行情与投资建议服务，提供以下功能：\n"
        "- 📊 行情数据（CoinGecko / CoinCap / Yahoo Finance 自动降级）\n"
        "- 📰 加密货币新闻（CryptoCompare）\n"
        "- 📈 技术指标分析（SMA / EMA / RSI / MACD / BBANDS）\n"
        "- 🤖 LLM 投资建议（Ollama）\n"
        "- 🗄️ 旁路缓存（内存 → Redis）\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 从数据提供商拉取原始数据\n"
        "Cache Layer        ← 内存 / Redis 两级缓存\n"
        "Processing Layer   ← 历史序列清洗与窗口裁剪\n"
        "Analysis Layer     ← 技术指标计算\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors: Dict[str, List[str]] = {}
    for error in exc.errors():
        # loc 形如 ("query", "limit")，去掉来源前缀
        loc = list(error.get("loc", ()))
        if loc and loc[0] in ("query", "path", "body", "header"):
            loc = loc[1:]
        field = ".".join(str(part) for part in loc) or "request"
        errors.setdefault(field, []).append(error.get("msg", "Invalid value"))
    return JSONResponse(status_code=400, content=ProblemResponse.validation(errors).to_content())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=ProblemResponse.from_status(exc.status_code, detail).to_content(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content=ProblemResponse.internal().to_content())


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(coins.router)
app.include_router(news.router)
app.include_router(recommendation.router)
app.include_router(cache.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "CryptoGPT Market Service",
        "version": __version__,
        "docs": "/docs",
        "health": "/api/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "cryptogpt.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
