"""
Layer 3 – 数据处理层
把各接口族互不相同的 JSON 结构归约为统一的数值记录：
  报价族           → NormalizedQuote
  时间序列族       → List[SeriesPoint]（按日期升序）
  数字货币日线族   → NormalizedQuote（最近两个交易日）
  外汇实时汇率     → NormalizedQuote（名义涨跌幅，见 approximations）
  商品 / 经济指标  → NormalizedQuote / List[ValuePoint]
  涨跌榜           → NormalizedQuote（榜首）

任何无法得到全部必需数值的情况都抛出 NormalizationError，绝不静默补零。
"""

import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from index_service.errors import NormalizationError
from index_service.layers.approximations import FOREX_NOMINAL_CHANGE_PERCENT
from index_service.models.market import NormalizedQuote, SeriesPoint, ValuePoint

logger = logging.getLogger(__name__)

# 上游用来表示"无数据"的占位值
_MISSING_MARKERS = {"", "none", "null", "n/a", "na", "-", ".", "nan"}

# 去掉 "1. " / "4a. " 之类的序号前缀
_FIELD_PREFIX = re.compile(r"^\s*\d+[a-z]?\.\s*", re.IGNORECASE)

# ── 响应中序列字段名查找表：(接口名, 周期) → 字段名 ──────────
SERIES_KEYS: Dict[Tuple[str, Optional[str]], str] = {
    ("TIME_SERIES_DAILY", None): "Time Series (Daily)",
    ("TIME_SERIES_DAILY_ADJUSTED", None): "Time Series (Daily)",
    ("TIME_SERIES_WEEKLY", None): "Weekly Time Series",
    ("TIME_SERIES_WEEKLY_ADJUSTED", None): "Weekly Adjusted Time Series",
    ("TIME_SERIES_MONTHLY", None): "Monthly Time Series",
    ("TIME_SERIES_MONTHLY_ADJUSTED", None): "Monthly Adjusted Time Series",
    ("FX_DAILY", None): "Time Series FX (Daily)",
    ("FX_WEEKLY", None): "Time Series FX (Weekly)",
    ("FX_MONTHLY", None): "Time Series FX (Monthly)",
    ("DIGITAL_CURRENCY_DAILY", None): "Time Series (Digital Currency Daily)",
    ("DIGITAL_CURRENCY_WEEKLY", None): "Time Series (Digital Currency Weekly)",
    ("DIGITAL_CURRENCY_MONTHLY", None): "Time Series (Digital Currency Monthly)",
}
for _iv in ("1min", "5min", "15min", "30min", "60min"):
    SERIES_KEYS[("TIME_SERIES_INTRADAY", _iv)] = f"Time Series ({_iv})"
    SERIES_KEYS[("FX_INTRADAY", _iv)] = f"Time Series FX ({_iv})"
    SERIES_KEYS[("CRYPTO_INTRADAY", _iv)] = f"Time Series Crypto ({_iv})"

# 不带成交量的接口族
_NO_VOLUME_FUNCTIONS = {"FX_INTRADAY", "FX_DAILY", "FX_WEEKLY", "FX_MONTHLY"}


def parse_number(value: Any, field: str = "value") -> float:
    """解析上游数值字符串（允许 "+2.50" / "1.69%" / "1,234"），无法得到有限数值时抛出"""
    if isinstance(value, bool) or value is None:
        raise NormalizationError(f"字段 {field} 缺失")
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if text.lower() in _MISSING_MARKERS:
            raise NormalizationError(f"字段 {field} 无数据: {value!r}")
        text = text.rstrip("%").replace(",", "")
        try:
            number = float(text)
        except ValueError:
            raise NormalizationError(f"字段 {field} 不是数值: {value!r}") from None
    if not math.isfinite(number):
        raise NormalizationError(f"字段 {field} 不是有限数值: {value!r}")
    return number


def _require_text(value: Any, field: str) -> str:
    if value is None or str(value).strip().lower() in _MISSING_MARKERS:
        raise NormalizationError(f"字段 {field} 缺失")
    return str(value).strip()


def _strip_prefix(field: str) -> str:
    return _FIELD_PREFIX.sub("", field).strip().lower()


def _pick(bar: Dict[str, Any], name: str, market: Optional[str] = None) -> Any:
    """按去掉序号后的字段名取值，兼容 "4. close" / "4a. close (USD)" 两种写法"""
    labels = {_strip_prefix(k): v for k, v in bar.items()}
    for candidate in (name, f"{name} ({(market or 'usd').lower()})", f"{name} (usd)"):
        if candidate in labels:
            return labels[candidate]
    return None


def _day(text: str) -> str:
    return text.split(" ")[0]


# ═════════════════════════════════════════════════════════
# 展示格式化
# ═════════════════════════════════════════════════════════

def format_price(price: float, decimals: int = 2) -> str:
    """$1.5M / $43.5K / $150.00"""
    if price >= 1_000_000:
        return f"${price / 1_000_000:.1f}M"
    if price >= 1_000:
        return f"${price / 1_000:.1f}K"
    return f"${price:.{decimals}f}"


def format_volume(volume: float) -> str:
    """成交量标签：1.2B / 3.4M / 5.6K / 789"""
    for threshold, suffix in ((1e9, "B"), (1e6, "M"), (1e3, "K")):
        if volume >= threshold:
            return f"{volume / threshold:.1f}{suffix}"
    return f"{volume:.0f}"


def format_change(change: float, change_percent: float, decimals: int = 2) -> Dict[str, Any]:
    """返回 change（百分比标签）/ change_value（涨跌额标签）/ is_positive"""
    is_positive = change >= 0
    sign = "+" if is_positive else ""
    return {
        "change": f"{sign}{change_percent:.2f}%",
        "change_value": f"{sign}{change:.{decimals}f}",
        "is_positive": is_positive,
    }


# ═════════════════════════════════════════════════════════
# 标准化
# ═════════════════════════════════════════════════════════

class ResponseNormalizer:
    """响应标准化：每个接口族一个入口方法"""

    # ── 报价族 ────────────────────────────────────────────

    def normalize_quote(self, payload: Dict[str, Any]) -> NormalizedQuote:
        quote = payload.get("Global Quote")
        if not isinstance(quote, dict) or not quote:
            raise NormalizationError("响应缺少 Global Quote")

        fields = {_strip_prefix(k): v for k, v in quote.items()}
        price = parse_number(fields.get("price"), "price")
        parse_number(fields.get("previous close"), "previous close")
        return NormalizedQuote(
            symbol=_require_text(fields.get("symbol"), "symbol"),
            price=price,
            change=parse_number(fields.get("change"), "change"),
            change_percent=parse_number(fields.get("change percent"), "change percent"),
            volume=parse_number(fields.get("volume"), "volume"),
            date=_require_text(fields.get("latest trading day"), "latest trading day"),
        )

    # ── 时间序列族 ────────────────────────────────────────

    @staticmethod
    def resolve_series_key(payload: Dict[str, Any], function: str, interval: Optional[str] = None) -> str:
        """
        定位响应中真正的序列字段

        优先查表；查不到时退回子串搜索（"Time Series"），两者都失败则抛出
        """
        expected = SERIES_KEYS.get((function, interval)) or SERIES_KEYS.get((function, None))
        if expected and expected in payload:
            return expected
        candidates = [k for k in payload if "Time Series" in k and isinstance(payload[k], dict)]
        if candidates:
            logger.warning(f"{function} 未在查找表中命中，按子串匹配使用字段: {candidates[0]}")
            return candidates[0]
        raise NormalizationError(f"{function} 响应中未找到时间序列字段", function=function)

    def normalize_time_series(
        self,
        payload: Dict[str, Any],
        function: str,
        interval: Optional[str] = None,
        market: Optional[str] = None,
    ) -> List[SeriesPoint]:
        """生成按日期升序的 {date, open, high, low, close, volume} 列表"""
        key = self.resolve_series_key(payload, function, interval)
        series = payload[key]
        if not isinstance(series, dict) or not series:
            raise NormalizationError(f"{function} 时间序列为空或格式错误", function=function)

        has_volume = function not in _NO_VOLUME_FUNCTIONS
        records = []
        for stamp, bar in series.items():
            if not isinstance(bar, dict):
                raise NormalizationError(f"{function} {stamp} 数据格式错误", function=function)
            records.append({
                "date": stamp,
                "open": _pick(bar, "open", market),
                "high": _pick(bar, "high", market),
                "low": _pick(bar, "low", market),
                "close": _pick(bar, "close", market),
                "volume": _pick(bar, "volume", market) if has_volume else 0,
            })

        df = pd.DataFrame(records)
        numeric_cols = ["open", "high", "low", "close", "volume"]
        for col in numeric_cols:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        bad = df[numeric_cols].isna() | df[numeric_cols].abs().eq(float("inf"))
        if bad.any().any():
            first = df.loc[bad.any(axis=1), "date"].iloc[0]
            raise NormalizationError(f"{function} {first} 含无法解析的数值", function=function)

        df["_ts"] = pd.to_datetime(df["date"], errors="coerce")
        if df["_ts"].isna().any():
            raise NormalizationError(f"{function} 含无法解析的日期", function=function)
        df = df.sort_values("_ts").reset_index(drop=True)
        return [
            SeriesPoint(date=str(row["date"]), **{col: float(row[col]) for col in numeric_cols})
            for _, row in df.iterrows()
        ]

    # ── 数字货币日线 ──────────────────────────────────────

    def normalize_crypto_daily(self, payload: Dict[str, Any], symbol: str, market: str = "USD") -> NormalizedQuote:
        """取最近两个可用交易日，以收盘价计算日涨跌；一个可用点都没有时抛出"""
        key = self.resolve_series_key(payload, "DIGITAL_CURRENCY_DAILY")
        series = payload[key]
        if not isinstance(series, dict):
            raise NormalizationError(f"{symbol} 数字货币日线格式错误", symbol=symbol)

        usable: List[Tuple[str, float, float]] = []
        for day in sorted(series, reverse=True):
            bar = series[day]
            if not isinstance(bar, dict):
                continue
            try:
                close = parse_number(_pick(bar, "close", market), "close")
                volume = _pick(bar, "volume", market)
                volume = parse_number(volume, "volume") if volume is not None else 0.0
            except NormalizationError as exc:
                logger.debug(f"{symbol} {day} 数据不可用: {exc}")
                continue
            usable.append((day, close, volume))
            if len(usable) == 2:
                break

        if not usable:
            raise NormalizationError(f"{symbol} 数字货币日线无可用数据", symbol=symbol)

        day, close, volume = usable[0]
        if len(usable) > 1 and usable[1][1] != 0:
            change = close - usable[1][1]
            change_percent = change / usable[1][1] * 100
        else:
            change, change_percent = 0.0, 0.0
        return NormalizedQuote(
            symbol=symbol, price=close, change=change,
            change_percent=change_percent, volume=volume, date=day,
        )

    # ── 外汇实时汇率 ──────────────────────────────────────

    def normalize_forex_rate(self, payload: Dict[str, Any]) -> NormalizedQuote:
        """上游不提供涨跌，使用固定名义涨跌幅（近似值，非真实行情）"""
        rate = payload.get("Realtime Currency Exchange Rate")
        if not isinstance(rate, dict) or not rate:
            raise NormalizationError("响应缺少 Realtime Currency Exchange Rate")

        fields = {_strip_prefix(k): v for k, v in rate.items()}
        price = parse_number(fields.get("exchange rate"), "exchange rate")
        pair = (
            _require_text(fields.get("from_currency code"), "from_currency code")
            + _require_text(fields.get("to_currency code"), "to_currency code")
        )
        return NormalizedQuote(
            symbol=pair,
            price=price,
            change=price * FOREX_NOMINAL_CHANGE_PERCENT / 100,
            change_percent=FOREX_NOMINAL_CHANGE_PERCENT,
            volume=0.0,
            date=_day(_require_text(fields.get("last refreshed"), "last refreshed")),
        )

    # ── 商品 / 经济指标 ───────────────────────────────────

    def value_points(self, payload: Dict[str, Any]) -> List[ValuePoint]:
        """返回按日期升序的可用数据点，"." 等无数据标记会被跳过"""
        data = payload.get("data")
        if not isinstance(data, list):
            raise NormalizationError("响应缺少 data 列表")
        points = []
        for item in data:
            if not isinstance(item, dict) or not item.get("date"):
                continue
            try:
                points.append(ValuePoint(date=str(item["date"]), value=parse_number(item.get("value"), "value")))
            except NormalizationError:
                continue
        if not points:
            raise NormalizationError("序列中没有可用数据点")
        return sorted(points, key=lambda p: p.date)

    def normalize_value_series(self, payload: Dict[str, Any], symbol: str) -> NormalizedQuote:
        return self.summarize_points(self.value_points(payload), symbol)

    @staticmethod
    def summarize_points(points: List[ValuePoint], symbol: str) -> NormalizedQuote:
        """最近一期为当前值，上一期为对比值；只有一期时涨跌为 0"""
        if not points:
            raise NormalizationError("序列中没有可用数据点", symbol=symbol)
        current = points[-1]
        change, change_percent = 0.0, 0.0
        if len(points) > 1:
            prior = points[-2].value
            change = current.value - prior
            change_percent = change / prior * 100 if prior != 0 else 0.0
        return NormalizedQuote(
            symbol=symbol,
            price=current.value,
            change=change,
            change_percent=change_percent,
            volume=0.0,
            date=current.date,
        )

    # ── 涨跌榜 ────────────────────────────────────────────

    def normalize_top_movers(self, payload: Dict[str, Any], list_name: str = "top_gainers") -> NormalizedQuote:
        entries = payload.get(list_name)
        if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
            raise NormalizationError(f"响应缺少 {list_name} 列表")
        top = entries[0]
        last_updated = payload.get("last_updated")
        return NormalizedQuote(
            symbol=_require_text(top.get("ticker"), "ticker"),
            price=parse_number(top.get("price"), "price"),
            change=parse_number(top.get("change_amount"), "change_amount"),
            change_percent=parse_number(top.get("change_percentage"), "change_percentage"),
            volume=parse_number(top.get("volume"), "volume"),
            date=_day(_require_text(last_updated, "last_updated")),
        )

    def mover_lists(self, payload: Dict[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
        """涨幅榜 / 跌幅榜 / 成交活跃榜，数值字段转为浮点，无法解析的条目丢弃"""
        result = {}
        for name in ("top_gainers", "top_losers", "most_actively_traded"):
            rows = []
            items = payload.get(name)
            for item in items if isinstance(items, list) else []:
                if not isinstance(item, dict):
                    continue
                try:
                    rows.append({
                        "ticker": _require_text(item.get("ticker"), "ticker"),
                        "price": parse_number(item.get("price"), "price"),
                        "change_amount": parse_number(item.get("change_amount"), "change_amount"),
                        "change_percentage": parse_number(item.get("change_percentage"), "change_percentage"),
                        "volume": parse_number(item.get("volume"), "volume"),
                    })
                except NormalizationError as exc:
                    logger.debug(f"{name} 条目丢弃: {exc}")
            result[name] = rows
        return result

    # ── 搜索 / 市场状态 / 新闻 / 基本面 ──────────────────

    def normalize_search(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        matches = payload.get("bestMatches")
        if not isinstance(matches, list):
            raise NormalizationError("响应缺少 bestMatches")
        results = []
        for match in matches:
            if not isinstance(match, dict):
                continue
            fields = {_strip_prefix(k): v for k, v in match.items()}
            try:
                score = parse_number(fields.get("matchscore"), "matchScore")
            except NormalizationError:
                score = None
            results.append({
                "symbol": fields.get("symbol"),
                "name": fields.get("name"),
                "type": fields.get("type"),
                "region": fields.get("region"),
                "currency": fields.get("currency"),
                "match_score": score,
            })
        return results

    def normalize_market_status(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        markets = payload.get("markets")
        if not isinstance(markets, list):
            raise NormalizationError("响应缺少 markets")
        return markets

    def normalize_news(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        feed = payload.get("feed")
        if not isinstance(feed, list):
            raise NormalizationError("响应缺少 feed")
        return feed

    def normalize_overview(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not payload.get("Symbol"):
            raise NormalizationError("公司概况缺少 Symbol")
        return payload

    # ── 技术指标 ──────────────────────────────────────────

    def normalize_technical_indicator(self, payload: Dict[str, Any], indicator: str) -> List[Dict[str, Any]]:
        """"Technical Analysis: X" → 按日期升序的 [{date, <指标列>...}]"""
        key = f"Technical Analysis: {indicator}"
        if key not in payload:
            candidates = [k for k in payload if "Technical Analysis" in k]
            if not candidates:
                raise NormalizationError(f"{indicator} 响应中未找到指标字段", function=indicator)
            key = candidates[0]
        series = payload[key]
        if not isinstance(series, dict) or not series:
            raise NormalizationError(f"{indicator} 指标序列为空", function=indicator)

        rows = []
        for stamp, values in series.items():
            if not isinstance(values, dict):
                raise NormalizationError(f"{indicator} {stamp} 数据格式错误", function=indicator)
            row = {"date": stamp}
            for name, raw in values.items():
                row[re.sub(r"[^a-z0-9]", "_", name.lower())] = parse_number(raw, name)
            rows.append(row)
        df = pd.DataFrame(rows)
        df["_ts"] = pd.to_datetime(df["date"], errors="coerce")
        df = df.sort_values("_ts").drop(columns="_ts").reset_index(drop=True)
        return df.to_dict(orient="records")
