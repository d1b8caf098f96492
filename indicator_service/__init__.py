"""
台股市场指标看板 数据服务
为看板前端提供指标快照、历史序列与市场信号的 HTTP 接口

架构分层：
  数据获取层 (Acquisition)  → 从 Yahoo / 证交所 / CNN / 玩股网 拉取原始数据
  缓存层     (Cache)        → 进程内 TTL 缓存
  处理层     (Processing)   → 十日均线、模拟历史序列、区间统计
  分析层     (Analysis)     → 多空信号与整体情绪判断
"""

__version__ = "1.0.0"
