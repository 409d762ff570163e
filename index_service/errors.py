"""
错误分类
上游请求与标准化过程中的四类可恢复错误，以及一类编程错误。
可恢复错误在单个指数任务边界被捕获并转换为兜底记录。
"""

from typing import Optional


class IndexDataError(Exception):
    """指数数据错误基类"""

    kind = "error"

    def __init__(self, message: str, *, symbol: Optional[str] = None, function: Optional[str] = None):
        super().__init__(message)
        self.symbol = symbol
        self.function = function


class TransportError(IndexDataError):
    """非 2xx 响应、网络故障或无法解析的响应体"""

    kind = "transport"

    def __init__(self, message: str, *, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ApiError(IndexDataError):
    """上游在响应体中返回 "Error Message"（参数语义错误）"""

    kind = "api"


class RateLimitedError(IndexDataError):
    """上游在响应体中返回 "Note" / "Information"（调用额度耗尽）"""

    kind = "rate_limited"


class NormalizationError(IndexDataError):
    """响应结构缺少必需字段，或必需字段无法解析为有限数值"""

    kind = "normalization"


class BackoffActiveError(IndexDataError):
    """该缓存键仍处于失败退避窗口内，本次不发起网络请求"""

    kind = "backoff"


class UnknownDataFamilyError(Exception):
    """指数配置了没有对应处理路径的数据族（编程错误）"""
