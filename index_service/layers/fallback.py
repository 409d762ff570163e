"""
Layer 4 – 兜底层
实时数据不可用时生成安全的占位记录；只有点位值时合成一条短走势线。

合成走势线只是展示用的近似，不是对真实历史价格的重建。
测试请固定随机种子，或只断言长度与取值范围。
"""

import logging
import random
from datetime import date
from typing import List, Optional

from index_service.layers.approximations import EURUSD_REFERENCE_SPARKLINE, REFERENCE_PRICES
from index_service.layers.processing import format_price
from index_service.models.market import DataFamily, DisplayIndex, InstrumentConfig

logger = logging.getLogger(__name__)

DEFAULT_SPARKLINE_POINTS = 8
_NOISE = 0.01          # 单点随机扰动 ±1%
_TREND_SHARE = 0.5     # 走势线末端体现总涨跌幅的一半


def synthesize_sparkline(
    current_price: float,
    change_percent: float,
    point_count: int = DEFAULT_SPARKLINE_POINTS,
    rng: Optional[random.Random] = None,
) -> List[float]:
    """
    由当前价与涨跌幅反推起点价，生成 point_count 个点：

        start = current / (1 + pct/100)
        p[i]  = start * (1 + noise_i + (i / (n-1)) * (pct/100) * 0.5)
    """
    if point_count <= 0:
        return []
    rng = rng or random
    growth = 1 + change_percent / 100
    start = current_price / growth if growth > 0 else current_price
    span = max(point_count - 1, 1)

    points = []
    for i in range(point_count):
        noise = rng.uniform(-_NOISE, _NOISE)
        trend = (i / span) * (change_percent / 100) * _TREND_SHARE
        points.append(start * (1 + noise + trend))
    return points


def fallback(config: InstrumentConfig, point_count: int = DEFAULT_SPARKLINE_POINTS) -> DisplayIndex:
    """零价格、中性涨跌、平直走势线的占位记录；对任何配置都不会抛出"""
    return DisplayIndex.from_config(
        config,
        current_value=0,
        value_label="N/A",
        price=0.0,
        change="0.00%",
        change_value="0.00",
        is_positive=True,
        sparkline_data=[0.0] * max(point_count, 0),
        volume_24h="N/A",
        last_updated=date.today().isoformat(),
        is_fallback=True,
    )


def reference_fallback(
    config: InstrumentConfig,
    point_count: int = DEFAULT_SPARKLINE_POINTS,
    rng: Optional[random.Random] = None,
) -> DisplayIndex:
    """
    使用 approximations.REFERENCE_PRICES 中的参考价格生成占位记录

    仅在 FALLBACK_USE_REFERENCE_PRICES 开启时使用；没有参考价格的代码退回零值记录
    """
    ref = REFERENCE_PRICES.get(config.symbol.upper())
    if ref is None:
        return fallback(config, point_count)

    price = ref["price"]
    is_positive = ref["change"] >= 0
    sign = "+" if is_positive else ""
    if config.family == DataFamily.FOREX:
        decimals = 4
        current_value = round(price * 10000)
        value_label = f"{price:.4f}"
        if point_count == len(EURUSD_REFERENCE_SPARKLINE):
            sparkline = list(EURUSD_REFERENCE_SPARKLINE)
        else:
            sparkline = synthesize_sparkline(price, ref["change_percent"], point_count, rng)
    else:
        decimals = 2
        current_value = round(price * 100)
        value_label = format_price(price)
        sparkline = synthesize_sparkline(price, ref["change_percent"], point_count, rng)

    return DisplayIndex.from_config(
        config,
        current_value=current_value,
        value_label=value_label,
        price=price,
        change=f"{sign}{ref['change_percent']:.2f}%",
        change_value=f"{sign}{ref['change']:.{decimals}f}",
        is_positive=is_positive,
        sparkline_data=sparkline,
        volume_24h=ref["volume"],
        last_updated=date.today().isoformat(),
        is_fallback=True,
    )
