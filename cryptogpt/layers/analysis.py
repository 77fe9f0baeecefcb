"""
Layer 4 – 技术分析层
在价格序列上计算技术指标：SMA、EMA、RSI、MACD、BBANDS，
并据此生成交易信号、综合评估、趋势描述与支撑 / 阻力位。
"""

import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from cryptogpt.layers.processing import ProcessingLayer
from cryptogpt.models.crypto import IndicatorInfo, IndicatorTimePoint, PriceHistoryPoint, TechnicalAnalysis

logger = logging.getLogger(__name__)

BULLISH = "BULLISH"
BEARISH = "BEARISH"
NEUTRAL = "NEUTRAL"

_MIN_SIGNAL_POINTS = 30
_MIN_LEVEL_POINTS = 50
_MIN_TREND_POINTS = 200

_INDICATOR_PATTERN = re.compile(r"^(SMA|EMA|RSI|MACD|BBANDS)(\d+)?$")
_DEFAULT_PERIODS = {"SMA": 20, "EMA": 20, "RSI": 14, "MACD": 9, "BBANDS": 20}

# 指标说明：(描述, 解读, 请求示例)
_INDICATOR_CATALOG = {
    "SMA": (
        "Simple Moving Average (SMA) shows average price over a period.",
        "Above SMA = bullish; below = bearish.",
        "SMA50",
    ),
    "EMA": (
        "Exponential Moving Average (EMA) gives more weight to recent prices.",
        "Above EMA = bullish; below = bearish.",
        "EMA12",
    ),
    "RSI": (
        "Relative Strength Index (RSI) measures speed of price changes.",
        "RSI >70 bearish; RSI <30 bullish.",
        "RSI14",
    ),
    "MACD": (
        "MACD (12/26) shows momentum changes; the period sets the signal line.",
        "MACD line above signal line = bullish.",
        "MACD",
    ),
    "BBANDS": (
        "Bollinger Bands (2 standard deviations) measure price volatility.",
        "Price near lower band = bullish; near upper band = bearish.",
        "BBANDS20",
    ),
}


@dataclass(frozen=True)
class IndicatorSpec:
    """指标参数；MACD 的 period 为信号线周期"""
    kind: str
    period: int
    fast_period: int = 12
    slow_period: int = 26
    deviation: float = 2.0

    @property
    def warmup(self) -> int:
        """计算首个有效值所需的额外数据点数"""
        if self.kind == "RSI":
            return self.period + 1
        if self.kind == "MACD":
            return self.slow_period + self.period
        return self.period


# 综合分析默认使用的指标
DEFAULT_SPECS: Dict[str, IndicatorSpec] = {
    "SMA20": IndicatorSpec("SMA", 20),
    "SMA50": IndicatorSpec("SMA", 50),
    "SMA200": IndicatorSpec("SMA", 200),
    "EMA12": IndicatorSpec("EMA", 12),
    "EMA26": IndicatorSpec("EMA", 26),
    "RSI14": IndicatorSpec("RSI", 14),
    "MACD": IndicatorSpec("MACD", 9),
    "BBANDS": IndicatorSpec("BBANDS", 20),
}


def _seeded_ewm(values: pd.Series, period: int, alpha: float) -> pd.Series:
    """以前 period 个值的简单平均作为初值的指数平滑"""
    if len(values) < period:
        return pd.Series(dtype="float64")
    seed = pd.Series([values.iloc[:period].mean()], index=[values.index[period - 1]])
    seeded = pd.concat([seed, values.iloc[period:]])
    return seeded.ewm(alpha=alpha, adjust=False).mean()


class AnalysisLayer:
    """技术分析层：在处理层输出的价格序列上计算指标与信号"""

    def __init__(self, processing: Optional[ProcessingLayer] = None):
        self._proc = processing if processing is not None else ProcessingLayer()

    # ── 指标参数 ──────────────────────────────────────────

    def available_indicators(self) -> List[IndicatorInfo]:
        return [
            IndicatorInfo(
                name=kind,
                description=description,
                meaning=meaning,
                default_period=_DEFAULT_PERIODS[kind],
                example=example,
            )
            for kind, (description, meaning, example) in _INDICATOR_CATALOG.items()
        ]

    def parse_indicators(self, names: Iterable[str]) -> Dict[str, IndicatorSpec]:
        """
        解析指标名称列表，例如 ["SMA50", "rsi", "MACD"]

        Raises:
            ValueError: 存在不支持的指标名称
        """
        specs: Dict[str, IndicatorSpec] = {}
        unknown = []
        for raw in names:
            name = raw.strip().upper()
            if not name:
                continue
            match = _INDICATOR_PATTERN.match(name)
            if match is None:
                unknown.append(raw.strip())
                continue
            kind, period = match.group(1), match.group(2)
            period = int(period) if period else _DEFAULT_PERIODS[kind]
            if period <= 0:
                unknown.append(raw.strip())
                continue
            specs[name] = IndicatorSpec(kind, period)
        if unknown:
            raise ValueError(f"不支持的指标: {unknown}，支持的指标: SMA<n>, EMA<n>, RSI<n>, MACD, BBANDS")
        return specs

    def required_days(self, specs: Dict[str, IndicatorSpec], days: int) -> int:
        """展示 days 天数据时实际需要拉取的天数（含指标预热）"""
        required = days
        for spec in specs.values():
            required = max(required, days + spec.warmup)
        return required

    # ── 单项指标 ──────────────────────────────────────────

    def sma(self, prices: pd.Series, period: int) -> pd.Series:
        if len(prices) < period:
            return pd.Series(dtype="float64")
        return prices.rolling(window=period).mean().dropna()

    def ema(self, prices: pd.Series, period: int) -> pd.Series:
        return _seeded_ewm(prices, period, alpha=2 / (period + 1))

    def rsi(self, prices: pd.Series, period: int = 14) -> pd.Series:
        """Wilder 平滑 RSI；平均跌幅为 0 时取 100"""
        if len(prices) <= period:
            return pd.Series(dtype="float64")
        delta = prices.diff().iloc[1:]
        avg_gain = _seeded_ewm(delta.clip(lower=0), period, alpha=1 / period)
        avg_loss = _seeded_ewm((-delta).clip(lower=0), period, alpha=1 / period)
        rs = avg_gain / avg_loss
        rsi = 100 - 100 / (1 + rs)
        return rsi.where(avg_loss != 0, 100.0)

    def macd(
        self, prices: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9
    ) -> Dict[str, pd.Series]:
        """MACD 线、信号线与柱状图"""
        if len(prices) <= slow + signal:
            return {}
        line = (self.ema(prices, fast) - self.ema(prices, slow)).dropna()
        signal_line = _seeded_ewm(line, signal, alpha=2 / (signal + 1))
        hist = (line - signal_line).dropna()
        return {"line": line, "signal": signal_line, "hist": hist}

    def bollinger(
        self, prices: pd.Series, period: int = 20, deviation: float = 2.0
    ) -> Dict[str, pd.Series]:
        """布林带（总体标准差）"""
        if len(prices) < period:
            return {}
        mid = prices.rolling(window=period).mean()
        std = prices.rolling(window=period).std(ddof=0)
        return {
            "upper": (mid + deviation * std).dropna(),
            "middle": mid.dropna(),
            "lower": (mid - deviation * std).dropna(),
        }

    # ── 指标序列 ──────────────────────────────────────────

    def compute_indicators(
        self,
        points: Sequence[PriceHistoryPoint],
        specs: Dict[str, IndicatorSpec],
    ) -> Dict[str, List[IndicatorTimePoint]]:
        """按指标名称计算时间序列；数据不足的指标不出现在结果中"""
        prices = self._proc.price_series(points)
        if prices.empty:
            return {}

        result: Dict[str, pd.Series] = {}
        for name, spec in specs.items():
            if spec.kind == "SMA":
                result[name] = self.sma(prices, spec.period)
            elif spec.kind == "EMA":
                result[name] = self.ema(prices, spec.period)
            elif spec.kind == "RSI":
                result[name] = self.rsi(prices, spec.period)
            elif spec.kind == "MACD":
                parts = self.macd(prices, spec.fast_period, spec.slow_period, spec.period)
                if parts:
                    result[name] = parts["line"]
                    result[f"{name}_SIGNAL"] = parts["signal"]
                    result[f"{name}_HIST"] = parts["hist"]
            elif spec.kind == "BBANDS":
                bands = self.bollinger(prices, spec.period, spec.deviation)
                if bands:
                    result[f"{name}_UPPER"] = bands["upper"]
                    result[f"{name}_MIDDLE"] = bands["middle"]
                    result[f"{name}_LOWER"] = bands["lower"]

        return {
            name: [
                IndicatorTimePoint(timestamp=int(ts), value=round(float(v), 8))
                for ts, v in series.items()
            ]
            for name, series in result.items()
            if not series.empty
        }

    # ── 综合分析 ──────────────────────────────────────────

    def analyze(
        self, coin_id: str, points: Sequence[PriceHistoryPoint], days: int
    ) -> TechnicalAnalysis:
        """生成完整技术分析：指标、信号、综合评估、趋势描述、支撑 / 阻力位"""
        indicators = self.compute_indicators(points, DEFAULT_SPECS)
        latest = {name: series[-1].value for name, series in indicators.items() if series}

        signals = self.generate_signals(points, indicators, latest)
        trend, signal, strength = self.assess(signals, latest)
        support, resistance = self.support_resistance(points)

        return TechnicalAnalysis(
            coin_id=coin_id,
            timestamp=int(time.time() * 1000),
            period_days=days,
            latest_values=latest,
            indicators=indicators,
            signals=signals,
            trend=trend,
            signal=signal,
            strength=strength,
            trend_analysis=self.describe_trend(points, indicators),
            support_levels=support,
            resistance_levels=resistance,
        )

    def generate_signals(
        self,
        points: Sequence[PriceHistoryPoint],
        indicators: Dict[str, List[IndicatorTimePoint]],
        latest: Dict[str, float],
    ) -> Dict[str, str]:
        """信号文本以 BULLISH / BEARISH / NEUTRAL 开头"""
        if len(points) < _MIN_SIGNAL_POINTS:
            return {"Error": "Insufficient data for signal generation"}

        signals: Dict[str, str] = {}
        price = points[-1].price

        sma20, sma50 = indicators.get("SMA20", []), indicators.get("SMA50", [])
        if len(sma20) > 1 and len(sma50) > 1:
            above_now = sma20[-1].value > sma50[-1].value
            above_before = sma20[-2].value > sma50[-2].value
            if above_now and not above_before:
                signals["MA Crossover"] = f"{BULLISH}: Short-term MA crossed above medium-term MA"
            elif above_before and not above_now:
                signals["MA Crossover"] = f"{BEARISH}: Short-term MA crossed below medium-term MA"

        rsi = latest.get("RSI14")
        if rsi is not None:
            if rsi > 70:
                signals["RSI"] = f"{BEARISH}: Overbought (RSI > 70)"
            elif rsi < 30:
                signals["RSI"] = f"{BULLISH}: Oversold (RSI < 30)"

        hist = indicators.get("MACD_HIST", [])
        if len(hist) >= 2:
            current, previous = hist[-1].value, hist[-2].value
            if current > 0 >= previous:
                signals["MACD"] = f"{BULLISH}: MACD crossed above zero line"
            elif current < 0 <= previous:
                signals["MACD"] = f"{BEARISH}: MACD crossed below zero line"
            elif previous < current < 0:
                signals["MACD"] = f"{NEUTRAL}/{BULLISH}: MACD histogram increasing but below zero"
            elif previous > current > 0:
                signals["MACD"] = f"{NEUTRAL}/{BEARISH}: MACD histogram decreasing but above zero"

        upper = latest.get("BBANDS_UPPER")
        middle = latest.get("BBANDS_MIDDLE")
        lower = latest.get("BBANDS_LOWER")
        if upper is not None and middle is not None and lower is not None:
            if price > upper:
                signals["Bollinger Bands"] = f"{BEARISH}: Price above upper Bollinger Band"
            elif price < lower:
                signals["Bollinger Bands"] = f"{BULLISH}: Price below lower Bollinger Band"
            elif middle and (upper - lower) / middle < 0.1:
                signals["Bollinger Bands"] = f"{NEUTRAL}: Tight Bollinger Bands suggest potential breakout"

        bullish = sum(1 for text in signals.values() if text.startswith(BULLISH))
        bearish = sum(1 for text in signals.values() if text.startswith(BEARISH))
        if bullish > bearish:
            signals["Overall"] = f"{BULLISH}: More bullish signals than bearish"
        elif bearish > bullish:
            signals["Overall"] = f"{BEARISH}: More bearish signals than bullish"
        else:
            signals["Overall"] = f"{NEUTRAL}: Mixed signals or consolidation"
        return signals

    def assess(self, signals: Dict[str, str], latest: Dict[str, float]) -> Tuple[str, str, int]:
        """综合评估，返回 (trend, signal, strength)，strength 取值 1..10"""
        if "Error" in signals:
            return "neutral", "hold", 5

        bullish = sum(1 for text in signals.values() if text.startswith(BULLISH))
        bearish = sum(1 for text in signals.values() if text.startswith(BEARISH))
        neutral = sum(1 for text in signals.values() if text.startswith(NEUTRAL))
        total = bullish + bearish + neutral

        trend, strength = "neutral", 5
        if bullish > bearish:
            trend = "bullish"
            strength = min(10, 5 + math.ceil(bullish / total * 5))
        elif bearish > bullish:
            trend = "bearish"
            strength = min(10, 5 + math.ceil(bearish / total * 5))

        rsi = latest.get("RSI14")
        if rsi is not None:
            if rsi > 80:
                trend, strength = "bearish", 9
            elif rsi > 70:
                if trend == "bearish":
                    strength = min(10, strength + 1)
                elif trend == "bullish":
                    strength = max(1, strength - 1)
            elif rsi < 20:
                trend, strength = "bullish", 9
            elif rsi < 30:
                if trend == "bullish":
                    strength = min(10, strength + 1)
                elif trend == "bearish":
                    strength = max(1, strength - 1)

        if trend == "bullish" and strength >= 7:
            signal = "buy"
        elif trend == "bearish" and strength >= 7:
            signal = "sell"
        else:
            signal = "hold"
        return trend, signal, strength

    def describe_trend(
        self,
        points: Sequence[PriceHistoryPoint],
        indicators: Dict[str, List[IndicatorTimePoint]],
    ) -> str:
        if len(points) < _MIN_TREND_POINTS or not all(
            indicators.get(name) for name in ("SMA20", "SMA50", "SMA200")
        ):
            return "Insufficient data for trend analysis"

        price = points[-1].price
        sma20 = indicators["SMA20"][-1].value
        sma50 = indicators["SMA50"][-1].value
        sma200 = indicators["SMA200"][-1].value

        if price > sma20 > sma50 > sma200:
            text = "Strong uptrend detected. Price is above all major moving averages with positive alignment."
        elif price < sma20 < sma50 < sma200:
            text = "Strong downtrend detected. Price is below all major moving averages with negative alignment."
        elif price > sma20 and price > sma50 and price < sma200:
            text = ("Potential recovery or weak uptrend. Price is above short-term moving averages "
                    "but remains below long-term moving average.")
        elif price < sma20 and price < sma50 and price > sma200:
            text = ("Potential pullback or weak downtrend. Price is below short-term moving averages "
                    "but remains above long-term moving average.")
        elif sma50 and abs(sma20 - sma50) / sma50 < 0.02:
            text = "Market appears to be in consolidation. Short-term moving averages are converging."
        else:
            text = "Mixed signals in the trend. No clear directional bias detected."

        rsi_series = indicators.get("RSI14")
        if rsi_series:
            rsi = rsi_series[-1].value
            if rsi > 70:
                text += " RSI indicates overbought conditions, suggesting caution for buyers."
            elif rsi < 30:
                text += " RSI indicates oversold conditions, suggesting potential for a bounce."
            elif 55 <= rsi <= 70:
                text += " RSI shows strong bullish momentum but not yet overbought."
            elif 30 <= rsi <= 45:
                text += " RSI shows bearish momentum but not yet oversold."

        hist = indicators.get("MACD_HIST", [])
        if len(hist) >= 2:
            current, previous = hist[-1].value, hist[-2].value
            if current > 0 >= previous:
                text += " MACD has recently crossed above zero, indicating bullish momentum shift."
            elif current < 0 <= previous:
                text += " MACD has recently crossed below zero, indicating bearish momentum shift."
            elif current > previous:
                text += " MACD histogram is increasing, suggesting growing bullish momentum."
            elif current < previous:
                text += " MACD histogram is decreasing, suggesting growing bearish momentum."
        return text

    # ── 支撑 / 阻力位 ─────────────────────────────────────

    def support_resistance(
        self, points: Sequence[PriceHistoryPoint]
    ) -> Tuple[List[float], List[float]]:
        """
        基于价格聚集区间计算支撑 / 阻力位（各最多 3 个）

        价格区间等分为 20 个桶，取出现次数最多的 10 个桶中心作为候选；
        当前价以下的为支撑、以上的为阻力，缺失时以 1/4、3/4 分位补齐
        """
        if len(points) < _MIN_LEVEL_POINTS:
            return [], []

        current = points[-1].price
        ordered = pd.Series(sorted(p.price for p in points), dtype="float64")
        n = len(ordered)
        q1, q3 = float(ordered.iloc[n // 4]), float(ordered.iloc[(3 * n) // 4])

        low, high = float(ordered.iloc[0]), float(ordered.iloc[-1])
        width = (high - low) / 20 or 0.01
        bins = ((ordered - low) / width).astype("int64").clip(upper=19)
        top = bins.value_counts(sort=False).sort_values(ascending=False, kind="stable").head(10)
        clusters = [low + int(b) * width + width / 2 for b in top.index]

        support = sorted((c for c in clusters if c < current), reverse=True)[:3]
        resistance = sorted(c for c in clusters if c > current)[:3]
        if not support:
            support = [q1]
        if not resistance:
            resistance = [q3]
        return [round(v, 8) for v in support], [round(v, 8) for v in resistance]
