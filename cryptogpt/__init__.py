"""
CryptoGPT 行情服务
聚合多家加密货币数据源，提供 HTTP 接口

架构分层：
  数据获取层 (Acquisition)  → CoinGecko / CoinCap / Yahoo Finance
  缓存层     (Cache)        → 进程内存 + Redis（可选）两级缓存
  处理层     (Processing)   → 价格序列清洗、排序、裁剪
  分析层     (Analysis)     → 技术指标与交易信号
"""

__version__ = "1.0.0"
