"""行情数据模型：指数配置、标准化记录与展示记录"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DataFamily(str, Enum):
    """指数所属的数据族，决定使用哪条获取 / 标准化路径"""

    STOCK = "stock"
    CRYPTO = "crypto"
    FOREX = "forex"
    COMMODITY = "commodity"
    ECONOMIC = "economic"
    INTELLIGENCE = "intelligence"


class InstrumentConfig(BaseModel):
    """
    单个跟踪指数的静态配置，启动时定义，运行期不可变

    symbol 的含义随数据族变化：
      stock        → 股票 / ETF 代码（AAPL）
      crypto       → 数字货币代码（BTC），计价货币见 market
      forex        → 六位货币对（EURUSD）
      commodity    → 商品接口名（WTI）
      economic     → 经济指标接口名（CPI）
      intelligence → 榜单名（top_gainers / top_losers / most_actively_traded）
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    symbol: str
    category: str
    family: DataFamily
    handle: str = ""
    description: str = ""
    provider: str = "Alpha Vantage"
    avatar: str = ""
    color: str = ""
    mindshare: str = ""
    market: str = "USD"


class NormalizedQuote(BaseModel):
    """各接口族统一归约后的报价记录"""

    symbol: str
    price: float
    change: float
    change_percent: float
    volume: float
    date: str


class SeriesPoint(BaseModel):
    """时间序列中的单根 K 线"""

    date: str
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class ValuePoint(BaseModel):
    """商品 / 经济指标序列中的单个数据点"""

    date: str
    value: float


class DisplayIndex(BaseModel):
    """聚合器输出：指数静态信息 + 标准化行情（或兜底数据）"""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    symbol: str
    category: str
    family: DataFamily
    handle: str = ""
    description: str = ""
    provider: str = ""
    avatar: str = ""
    color: str = ""
    mindshare: str = ""
    market: str = "USD"

    current_value: int = Field(alias="currentValue")
    value_label: str = Field(alias="valueLabel")
    price: float
    change: str
    change_value: str = Field(alias="changeValue")
    is_positive: bool = Field(alias="isPositive")
    sparkline_data: List[float] = Field(alias="sparklineData")
    volume_24h: Optional[str] = Field(default=None, alias="volume24h")
    last_updated: str = Field(alias="lastUpdated")
    is_fallback: bool = Field(default=False, alias="isFallback")

    @classmethod
    def from_config(cls, config: InstrumentConfig, **values) -> "DisplayIndex":
        return cls(**config.model_dump(), **values)

    def to_public(self) -> dict:
        """按前端约定的 camelCase 字段名导出"""
        return self.model_dump(mode="json", by_alias=True)
