"""
默认跟踪的指数目录
启动时定义一次，运行期不修改；输出顺序与此处顺序一致。
"""

from typing import List, Tuple

from index_service.models.market import DataFamily, InstrumentConfig

DEFAULT_INSTRUMENTS: Tuple[InstrumentConfig, ...] = (
    InstrumentConfig(
        id="AAPL_STOCK",
        name="Apple Inc.",
        symbol="AAPL",
        handle="@apple",
        description="Apple Inc. stock price tracked in real-time",
        category="Stocks",
        family=DataFamily.STOCK,
        avatar="🍎",
        color="bg-blue-500",
        mindshare="0.52%",
    ),
    InstrumentConfig(
        id="BTC_PRICE",
        name="Bitcoin",
        symbol="BTC",
        handle="@bitcoin",
        description="Bitcoin price tracked in real-time",
        category="Crypto",
        family=DataFamily.CRYPTO,
        avatar="₿",
        color="bg-orange-500",
        mindshare="1.45%",
    ),
    InstrumentConfig(
        id="ETH_PRICE",
        name="Ethereum",
        symbol="ETH",
        handle="@ethereum",
        description="Ethereum price tracked in real-time",
        category="Crypto",
        family=DataFamily.CRYPTO,
        avatar="Ξ",
        color="bg-purple-500",
        mindshare="0.89%",
    ),
    InstrumentConfig(
        id="GOLD_PRICE",
        name="Gold",
        symbol="GLD",
        handle="@gold_price",
        description="Gold price per ounce tracked via GLD ETF",
        category="Commodities",
        family=DataFamily.STOCK,
        avatar="🥇",
        color="bg-yellow-500",
        mindshare="0.33%",
    ),
    InstrumentConfig(
        id="EUR_USD",
        name="EUR/USD",
        symbol="EURUSD",
        handle="@eurusd",
        description="EUR/USD exchange rate tracked in real-time",
        category="Forex",
        family=DataFamily.FOREX,
        avatar="💱",
        color="bg-green-500",
        mindshare="0.21%",
    ),
    InstrumentConfig(
        id="TSLA_STOCK",
        name="Tesla Inc.",
        symbol="TSLA",
        handle="@tesla",
        description="Tesla Inc. stock price tracked in real-time",
        category="Stocks",
        family=DataFamily.STOCK,
        avatar="🚗",
        color="bg-red-500",
        mindshare="0.67%",
    ),
    InstrumentConfig(
        id="SPY_ETF",
        name="S&P 500 ETF",
        symbol="SPY",
        handle="@spy_etf",
        description="SPDR S&P 500 ETF Trust tracked in real-time",
        category="ETFs",
        family=DataFamily.STOCK,
        avatar="📈",
        color="bg-indigo-500",
        mindshare="0.44%",
    ),
    InstrumentConfig(
        id="VIX_INDEX",
        name="VIX Volatility",
        symbol="VIX",
        handle="@vix_index",
        description="CBOE Volatility Index tracked in real-time",
        category="Indices",
        family=DataFamily.STOCK,
        avatar="⚡",
        color="bg-gray-500",
        mindshare="0.19%",
    ),
    InstrumentConfig(
        id="WTI_OIL",
        name="Crude Oil (WTI)",
        symbol="WTI",
        handle="@wti_oil",
        description="WTI crude oil price per barrel",
        category="Commodities",
        family=DataFamily.COMMODITY,
        avatar="🛢️",
        color="bg-stone-500",
        mindshare="0.28%",
    ),
    InstrumentConfig(
        id="US_CPI",
        name="US CPI",
        symbol="CPI",
        handle="@us_cpi",
        description="US consumer price index, monthly",
        category="Economics",
        family=DataFamily.ECONOMIC,
        avatar="📊",
        color="bg-teal-500",
        mindshare="0.12%",
    ),
    InstrumentConfig(
        id="TOP_GAINER",
        name="Top Gainer",
        symbol="top_gainers",
        handle="@top_gainer",
        description="Best performing US ticker of the day",
        category="Intelligence",
        family=DataFamily.INTELLIGENCE,
        avatar="🚀",
        color="bg-pink-500",
        mindshare="0.09%",
    ),
)


def default_instruments() -> List[InstrumentConfig]:
    return list(DEFAULT_INSTRUMENTS)


def split_pair(symbol: str) -> Tuple[str, str]:
    """EURUSD → (EUR, USD)；也接受 EUR/USD"""
    cleaned = symbol.replace("/", "").replace("-", "").upper()
    if len(cleaned) != 6:
        raise ValueError(f"无法识别的货币对: {symbol}")
    return cleaned[:3], cleaned[3:]
