"""
数据流分层架构
  Layer 1 – Acquisition  : 数据获取（行情 API / 证交所开放数据 / 网页抓取）
  Layer 2 – Cache        : 进程内 TTL 缓存
  Layer 3 – Processing   : 十日均线与历史序列处理
  Layer 4 – Analysis     : 市场信号分析
"""
