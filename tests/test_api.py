"""
HTTP 路由测试（TestClient，不需要真实上游与 Redis）

服务实例通过 app.dependency_overrides 替换为假对象
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from conftest import make_coin, make_points
from cryptogpt.dependencies import (
    get_cache,
    get_crypto_service,
    get_llm_service,
    get_news_service,
    get_recommendation_engine,
    get_redis,
)
from cryptogpt.layers.analysis import AnalysisLayer
from cryptogpt.layers.cache import LocalCacheLayer, MemoryTier
from cryptogpt.models.crypto import (
    AssetRecommendation,
    CryptoCurrencyDetail,
    CryptoNewsItem,
    MarketHistory,
    MarketOverview,
    MarketSnapshot,
    RiskProfile,
    TechnicalAnalysis,
)


@pytest.fixture
def fakes(clock):
    crypto = MagicMock()
    crypto.get_top_coins = AsyncMock(return_value=[make_coin("bitcoin", change=2.5, volume=3e10, symbol="btc")])
    crypto.get_coin_data = AsyncMock(
        return_value=CryptoCurrencyDetail(id="bitcoin", symbol="btc", name="Bitcoin", high_24h=66000.0)
    )
    crypto.get_market_chart = AsyncMock(
        return_value=MarketHistory(coin_id="bitcoin", prices=make_points([1.0, 2.0]))
    )
    crypto.get_market_overview = AsyncMock(return_value=MarketOverview(market_metrics={"btc_dominance": 50.0}))
    crypto.get_technical_analysis = AsyncMock(return_value=TechnicalAnalysis(
        coin_id="bitcoin", timestamp=1, period_days=30,
        latest_values={"RSI14": 55.0}, support_levels=[60000.0],
    ))
    crypto.current_data_source = MagicMock(return_value="coincap")
    crypto.available_indicators = MagicMock(return_value=AnalysisLayer().available_indicators())

    news = MagicMock()
    news.get_market_news = AsyncMock(return_value=[CryptoNewsItem(title="Market update", image_url="https://img")])
    news.get_coin_news = AsyncMock(return_value=[])

    engine = MagicMock()
    engine.generate_recommendations = AsyncMock(return_value={
        "market_analysis": "steady",
        "recommendations": [{"symbol": "BTC", "allocation": 60, "risk_level": "low"}],
        "risk_profile": "Aggressive",
        "timestamp": "2024-01-01T00:00:00+00:00",
    })
    engine.get_market_snapshot = AsyncMock(return_value=MarketSnapshot(
        market_metrics={"total_market_cap_usd": 1.0},
        timestamp="2024-01-01T00:00:00Z",
        data_source="coingecko",
    ))
    engine.get_asset_recommendation = AsyncMock(return_value=AssetRecommendation(
        coin_id="bitcoin", coin_symbol="BTC", generated_at="2024-01-01T00:00:00Z",
        recommendation="buy", confidence=0.75, summary="Solid momentum.",
    ))

    llm = MagicMock()
    llm.is_healthy = AsyncMock(return_value=False)
    llm.model = "llama2"

    cache = LocalCacheLayer(MemoryTier(clock=clock))
    return SimpleNamespace(crypto=crypto, news=news, engine=engine, llm=llm, cache=cache)


@pytest.fixture
def client(fakes):
    """启动应用（Redis 打桩为不可用），依赖替换为假对象"""
    from cryptogpt.main import app

    app.dependency_overrides.update({
        get_crypto_service: lambda: fakes.crypto,
        get_news_service: lambda: fakes.news,
        get_recommendation_engine: lambda: fakes.engine,
        get_llm_service: lambda: fakes.llm,
        get_cache: lambda: fakes.cache,
        get_redis: lambda: None,
    })
    with patch("cryptogpt.main.open_redis", new_callable=AsyncMock, return_value=None):
        with TestClient(app, raise_server_exceptions=False) as c:
            yield c
    app.dependency_overrides.clear()


# ─────────────────────────────────────────────────────────
# 1. 健康检查 / 根路由
# ─────────────────────────────────────────────────────────

class TestHealthRoutes:
    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "operational"
        assert "timestamp" in body
        assert resp.headers["X-Process-Time"].endswith("ms")

    def test_health_detailed(self, client):
        body = client.get("/api/health/detailed").json()
        assert body["cache"]["mode"] == "local"
        assert body["redis"] == {"status": "disabled"}
        assert body["llm"] == {"status": "unavailable", "model": "llama2"}
        assert body["dataSource"] == "coincap"

    def test_root(self, client):
        body = client.get("/").json()
        assert body["health"] == "/api/health"

    def test_unknown_route(self, client):
        resp = client.get("/api/does-not-exist")
        assert resp.status_code == 404
        assert resp.json() == {"title": "Not Found", "status": 404, "detail": "Not Found"}


# ─────────────────────────────────────────────────────────
# 2. 行情路由
# ─────────────────────────────────────────────────────────

class TestCoinRoutes:
    def test_top_coins_camel_case(self, client, fakes):
        resp = client.get("/api/coin", params={"limit": 5})
        assert resp.status_code == 200
        coin = resp.json()[0]
        assert coin["symbol"] == "BTC"
        assert coin["currentPrice"] == 1.0
        assert coin["volume24h"] == 3e10
        assert coin["priceChangePercentage24h"] == 2.5
        assert "marketCapRank" in coin
        fakes.crypto.get_top_coins.assert_awaited_once_with(5)

    def test_top_coins_default_limit(self, client, fakes):
        client.get("/api/coin")
        fakes.crypto.get_top_coins.assert_awaited_once_with(10)

    @pytest.mark.parametrize("limit", [0, 251])
    def test_top_coins_limit_out_of_range(self, client, limit):
        resp = client.get("/api/coin", params={"limit": limit})
        assert resp.status_code == 400
        body = resp.json()
        assert body["title"] == "One or more validation errors occurred."
        assert body["status"] == 400
        assert list(body["errors"]) == ["limit"]

    def test_overview_and_source(self, client):
        overview = client.get("/api/coin/overview").json()
        assert overview["marketMetrics"] == {"btc_dominance": 50.0}
        assert overview["topGainers"] == []
        assert client.get("/api/coin/source").json() == {"source": "coincap"}

    def test_available_indicators(self, client, fakes):
        resp = client.get("/api/coin/technical-indicators")
        assert resp.status_code == 200
        body = resp.json()
        assert [i["name"] for i in body] == ["SMA", "EMA", "RSI", "MACD", "BBANDS"]
        assert body[2]["defaultPeriod"] == 14
        assert body[2]["meaning"]
        fakes.crypto.get_coin_data.assert_not_awaited()

    def test_coin_detail(self, client):
        body = client.get("/api/coin/bitcoin").json()
        assert body["id"] == "bitcoin"
        assert body["high24h"] == 66000.0

    def test_coin_not_found(self, client, fakes):
        fakes.crypto.get_coin_data.return_value = None
        resp = client.get("/api/coin/nope-coin")
        assert resp.status_code == 404
        body = resp.json()
        assert body["title"] == "Not Found"
        assert "nope-coin" in body["detail"]

    def test_coin_id_too_short(self, client, fakes):
        resp = client.get("/api/coin/x")
        assert resp.status_code == 400
        assert "coin_id" in resp.json()["errors"]
        fakes.crypto.get_coin_data.assert_not_awaited()

    def test_chart(self, client, fakes):
        resp = client.get("/api/coin/bitcoin/chart", params={"days": 7, "indicators": "SMA20,RSI14"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["coinId"] == "bitcoin"
        assert body["prices"][0] == {"timestamp": 1_700_000_000_000, "price": 1.0}
        fakes.crypto.get_market_chart.assert_awaited_once_with("bitcoin", 7, "SMA20,RSI14")

    def test_chart_unknown_indicator(self, client, fakes):
        fakes.crypto.get_market_chart.side_effect = ValueError("不支持的指标: ['VWAP']")
        resp = client.get("/api/coin/bitcoin/chart", params={"indicators": "VWAP"})
        assert resp.status_code == 400
        assert "VWAP" in resp.json()["detail"]

    def test_chart_days_out_of_range(self, client):
        assert client.get("/api/coin/bitcoin/chart", params={"days": 366}).status_code == 400

    def test_chart_not_found(self, client, fakes):
        fakes.crypto.get_market_chart.return_value = None
        assert client.get("/api/coin/bitcoin/chart").status_code == 404

    def test_technical_analysis(self, client):
        body = client.get("/api/coin/bitcoin/technical-analysis").json()
        assert body["latestValues"] == {"RSI14": 55.0}
        assert body["supportLevels"] == [60000.0]
        assert body["signal"] == "hold"

    def test_technical_analysis_not_found(self, client, fakes):
        fakes.crypto.get_technical_analysis.return_value = None
        assert client.get("/api/coin/bitcoin/technical-analysis").status_code == 404

    def test_unhandled_error_is_generic_500(self, client, fakes):
        fakes.crypto.get_market_overview.side_effect = RuntimeError("secret upstream detail")
        resp = client.get("/api/coin/overview")
        assert resp.status_code == 500
        body = resp.json()
        assert body["status"] == 500
        assert "secret" not in body["detail"]


# ─────────────────────────────────────────────────────────
# 3. 新闻路由
# ─────────────────────────────────────────────────────────

class TestNewsRoutes:
    def test_market_news(self, client, fakes):
        body = client.get("/api/news").json()
        assert body[0]["title"] == "Market update"
        assert body[0]["imageUrl"] == "https://img"
        fakes.news.get_market_news.assert_awaited_once_with(20)

    def test_news_limit_validation(self, client):
        assert client.get("/api/news", params={"limit": 101}).status_code == 400

    def test_coin_news(self, client, fakes):
        assert client.get("/api/news/bitcoin", params={"symbol": "BTC"}).json() == []
        fakes.news.get_coin_news.assert_awaited_once_with("bitcoin", symbol="BTC", limit=10)


# ─────────────────────────────────────────────────────────
# 4. 投资建议路由
# ─────────────────────────────────────────────────────────

class TestRecommendationRoutes:
    def test_generate(self, client, fakes):
        resp = client.post("/api/recommendation", json={"query": "Where to invest?", "riskProfile": "Aggressive"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["marketAnalysis"] == "steady"
        assert body["riskProfile"] == "Aggressive"
        assert body["recommendations"][0]["symbol"] == "BTC"
        assert body["recommendations"][0]["riskLevel"] == "low"
        fakes.engine.generate_recommendations.assert_awaited_once_with(
            "Where to invest?", RiskProfile.AGGRESSIVE
        )

    def test_defaults(self, client, fakes):
        client.post("/api/recommendation", json={})
        fakes.engine.generate_recommendations.assert_awaited_once_with(
            "Investment advice for crypto", RiskProfile.MODERATE
        )

    def test_invalid_body(self, client):
        resp = client.post("/api/recommendation", json={"query": "", "riskProfile": "Reckless"})
        assert resp.status_code == 400
        assert set(resp.json()["errors"]) == {"query", "riskProfile"}

    def test_llm_failure_is_500(self, client, fakes):
        fakes.engine.generate_recommendations.side_effect = RuntimeError("ollama down")
        resp = client.post("/api/recommendation", json={"query": "x"})
        assert resp.status_code == 500
        assert resp.json()["detail"] == "内部服务错误"

    def test_market_snapshot(self, client):
        body = client.get("/api/recommendation/market-snapshot").json()
        assert body["dataSource"] == "coingecko"
        assert body["marketMetrics"] == {"total_market_cap_usd": 1.0}
        assert body["marketSentiment"] == "neutral"

    def test_asset_recommendation(self, client, fakes):
        resp = client.get("/api/recommendation/bitcoin")
        assert resp.status_code == 200
        body = resp.json()
        assert body["coinId"] == "bitcoin"
        assert body["coinSymbol"] == "BTC"
        assert body["recommendation"] == "buy"
        assert body["confidence"] == 0.75
        assert "generatedAt" in body
        fakes.engine.get_asset_recommendation.assert_awaited_once_with("bitcoin")

    def test_asset_recommendation_id_too_short(self, client, fakes):
        assert client.get("/api/recommendation/x").status_code == 400
        fakes.engine.get_asset_recommendation.assert_not_awaited()


# ─────────────────────────────────────────────────────────
# 5. 缓存管理路由
# ─────────────────────────────────────────────────────────

class TestCacheRoutes:
    def _seed(self, fakes):
        fakes.cache._local.set("coingecko:top_coins:10", ["btc"], 60)
        fakes.cache._local.set("news:market:20", [], 60)

    def test_stats(self, client, fakes):
        self._seed(fakes)
        body = client.get("/api/cache/stats").json()
        assert body["mode"] == "local"
        assert body["memory"]["keys"] == 2

    def test_clear_single_key(self, client, fakes):
        self._seed(fakes)
        resp = client.post("/api/cache/clear", json={"namespace": "coingecko", "keyParts": ["top_coins", "10"]})
        assert resp.json() == {"cleared": "coingecko:top_coins:10", "removed": 1}
        assert fakes.cache.peek("coingecko:top_coins:10") is None
        assert fakes.cache.peek("news:market:20") is not None

    def test_clear_all(self, client, fakes):
        self._seed(fakes)
        resp = client.post("/api/cache/clear", json={})
        assert resp.json() == {"cleared": "all", "removed": 2}
