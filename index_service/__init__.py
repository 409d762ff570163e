"""
Index Data Service 指数数据服务
基于 Alpha Vantage 的行情数据获取、缓存、标准化与聚合服务

架构分层：
  数据获取层 (Acquisition)  → 向 Alpha Vantage（或同源中转接口）发起单次请求并分类结果
  缓存层     (Cache)        → 按接口类型设置新鲜度 + 失败退避（Redis / MongoDB / 文件 / 内存）
  处理层     (Processing)   → 各接口族 JSON 标准化为统一数值记录
  兜底层     (Fallback)     → 占位记录与合成走势线
"""

__version__ = "1.0.0"
