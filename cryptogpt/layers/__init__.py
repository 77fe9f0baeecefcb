"""
数据流分层架构
  Layer 1 – Acquisition  : 数据获取（CoinGecko / CoinCap / Yahoo Finance）
  Layer 2 – Cache        : 旁路缓存（内存 → Redis）
  Layer 3 – Processing   : 历史序列清洗与窗口裁剪
  Layer 4 – Analysis     : 技术指标与信号计算
"""
