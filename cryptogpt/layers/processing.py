"""
Layer 3 – 数据处理层
对上游返回的历史序列进行清洗、排序、去重，并按时间窗口裁剪。
"""

import logging
import time
from typing import Dict, Iterable, List, Optional, Sequence

import pandas as pd

from cryptogpt.models.crypto import IndicatorTimePoint, MarketHistory, PriceHistoryPoint

logger = logging.getLogger(__name__)

_MS_PER_DAY = 24 * 60 * 60 * 1000


class ProcessingLayer:
    """数据处理层：清洗 + 格式化 + 窗口裁剪"""

    def normalize_points(self, raw: Iterable[Sequence]) -> pd.DataFrame:
        """
        将 [timestamp_ms, value] 形式的原始点列表标准化为 DataFrame

        标准列：timestamp (int64, 毫秒), value (float)
        无法解析的行被丢弃；重复时间戳保留最后一个值
        """
        df = pd.DataFrame(list(raw), columns=["timestamp", "value"])
        if df.empty:
            return df

        df["timestamp"] = pd.to_numeric(df["timestamp"], errors="coerce")
        df["value"] = pd.to_numeric(df["value"], errors="coerce")
        df = df.dropna(subset=["timestamp", "value"])
        df["timestamp"] = df["timestamp"].astype("int64")

        df = df.drop_duplicates(subset=["timestamp"], keep="last")
        df = df.sort_values("timestamp").reset_index(drop=True)
        return df

    def to_points(self, df: pd.DataFrame) -> List[PriceHistoryPoint]:
        """DataFrame 转换为 PriceHistoryPoint 列表"""
        if df.empty:
            return []
        return [
            PriceHistoryPoint(timestamp=int(ts), price=float(value))
            for ts, value in zip(df["timestamp"], df["value"])
        ]

    def points_from_pairs(self, raw: Iterable[Sequence]) -> List[PriceHistoryPoint]:
        return self.to_points(self.normalize_points(raw))

    def points_from_frame(self, df: pd.DataFrame, column: str) -> List[PriceHistoryPoint]:
        """
        从以 DatetimeIndex 为索引的行情 DataFrame（yfinance 格式）中提取一列
        """
        if df.empty or column not in df.columns:
            return []
        index = pd.to_datetime(df.index, utc=True)
        timestamps = index.as_unit("ms").asi8
        return self.points_from_pairs(zip(timestamps, df[column]))

    def price_series(self, points: Sequence[PriceHistoryPoint]) -> pd.Series:
        """价格序列，索引为毫秒时间戳"""
        if not points:
            return pd.Series(dtype="float64")
        return pd.Series(
            [p.price for p in points],
            index=[p.timestamp for p in points],
            dtype="float64",
        )

    # ── 窗口裁剪 ──────────────────────────────────────────

    def trim_history(
        self, history: MarketHistory, days: int, now_ms: Optional[int] = None
    ) -> MarketHistory:
        """
        仅保留最近 days 天的数据（包含指标序列），返回新对象

        为计算指标而额外拉取的预热数据在这里被裁掉
        """
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        earliest = now_ms - days * _MS_PER_DAY

        def _keep(points):
            return [p for p in points if p.timestamp >= earliest]

        series: Optional[Dict[str, List[IndicatorTimePoint]]] = None
        if history.indicator_series is not None:
            series = {name: _keep(values) for name, values in history.indicator_series.items()}

        return history.model_copy(update={
            "prices": _keep(history.prices),
            "market_caps": _keep(history.market_caps),
            "volumes": _keep(history.volumes),
            "indicator_series": series,
        })
