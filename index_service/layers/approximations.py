"""
近似值表

以下常量不来自任何真实行情信号，仅用于展示占位：
  - 实时汇率接口不提供涨跌幅，外汇指数使用固定的名义涨跌幅
  - 参考价格只在 FALLBACK_USE_REFERENCE_PRICES 开启时用于兜底记录

不要把它们当作可推导的公式去"修正"。
"""

from typing import Dict, List

# 外汇名义涨跌幅（%），展示为下跌
FOREX_NOMINAL_CHANGE_PERCENT = -0.45

# 按代码的参考价格：price / 涨跌幅(%) / 涨跌额 / 成交量标签
REFERENCE_PRICES: Dict[str, dict] = {
    "BTC": {"price": 43500.0, "change_percent": 2.34, "change": 500.0, "volume": "1.2B"},
    "ETH": {"price": 2650.0, "change_percent": 2.34, "change": 500.0, "volume": "1.2B"},
    "EURUSD": {"price": 1.0850, "change_percent": -0.45, "change": -0.0049, "volume": "2.1B"},
}

# EUR/USD 兜底走势线（固定形状）
EURUSD_REFERENCE_SPARKLINE: List[float] = [1.090, 1.088, 1.085, 1.087, 1.083, 1.085, 1.082, 1.085]
