"""
数据流分层架构
  Layer 1 – Acquisition  : 单次上游请求 + 结果分类（成功 / 接口错误 / 限流 / 传输错误）
  Layer 2 – Cache        : 按接口 TTL 的缓存与指数退避
  Layer 3 – Processing   : 各接口族响应标准化
  Layer 4 – Fallback     : 兜底记录与走势线合成
"""
