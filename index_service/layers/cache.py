"""
Layer 2 – 缓存层
按 (代码, 接口名, 周期) 缓存上游原始响应，每类接口有独立的新鲜度（TTL），
失败请求进入指数退避窗口，避免持续失败的接口被反复请求。

存储后端：内存 / 文件 / Redis / MongoDB，损坏或无法读取的条目一律视为未命中。
"""

import hashlib
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

_NAMESPACE = "alphavantage"

# ── 接口 TTL 策略表（秒） ─────────────────────────────────
# 报价与分钟线最快过期，月度序列与经济指标最慢
ENDPOINT_TTL: Dict[str, int] = {
    # 实时类
    "GLOBAL_QUOTE": 5 * 60,
    "CURRENCY_EXCHANGE_RATE": 5 * 60,
    "TIME_SERIES_INTRADAY": 5 * 60,
    "FX_INTRADAY": 5 * 60,
    "CRYPTO_INTRADAY": 5 * 60,
    "TOP_GAINERS_LOSERS": 15 * 60,
    "MARKET_STATUS": 15 * 60,
    "NEWS_SENTIMENT": 30 * 60,
    # 日线
    "TIME_SERIES_DAILY": 6 * 3600,
    "TIME_SERIES_DAILY_ADJUSTED": 6 * 3600,
    "FX_DAILY": 6 * 3600,
    "DIGITAL_CURRENCY_DAILY": 6 * 3600,
    # 周线 / 月线
    "TIME_SERIES_WEEKLY": 12 * 3600,
    "TIME_SERIES_WEEKLY_ADJUSTED": 12 * 3600,
    "FX_WEEKLY": 12 * 3600,
    "DIGITAL_CURRENCY_WEEKLY": 12 * 3600,
    "TIME_SERIES_MONTHLY": 24 * 3600,
    "TIME_SERIES_MONTHLY_ADJUSTED": 24 * 3600,
    "FX_MONTHLY": 24 * 3600,
    "DIGITAL_CURRENCY_MONTHLY": 24 * 3600,
    # 商品
    "WTI": 24 * 3600,
    "BRENT": 24 * 3600,
    "NATURAL_GAS": 24 * 3600,
    "COPPER": 24 * 3600,
    "ALUMINUM": 24 * 3600,
    "WHEAT": 24 * 3600,
    "CORN": 24 * 3600,
    "COTTON": 24 * 3600,
    "SUGAR": 24 * 3600,
    "COFFEE": 24 * 3600,
    "ALL_COMMODITIES": 24 * 3600,
    # 经济指标
    "REAL_GDP": 48 * 3600,
    "REAL_GDP_PER_CAPITA": 48 * 3600,
    "TREASURY_YIELD": 24 * 3600,
    "FEDERAL_FUNDS_RATE": 24 * 3600,
    "CPI": 48 * 3600,
    "INFLATION": 48 * 3600,
    "RETAIL_SALES": 48 * 3600,
    "DURABLES": 48 * 3600,
    "UNEMPLOYMENT": 48 * 3600,
    "NONFARM_PAYROLL": 48 * 3600,
}

# 技术指标统一 1 小时；其余未列出的接口（基本面、搜索等）按 1 天
TECHNICAL_INDICATOR_TTL = 3600
DEFAULT_TTL = 24 * 3600

TECHNICAL_INDICATORS = frozenset({
    "SMA", "EMA", "WMA", "DEMA", "TEMA", "TRIMA", "KAMA", "MAMA", "VWAP", "T3",
    "MACD", "MACDEXT", "STOCH", "STOCHF", "RSI", "STOCHRSI", "WILLR",
    "ADX", "ADXR", "APO", "PPO", "MOM", "BOP", "CCI", "CMO", "ROC",
    "ROCR", "AROON", "AROONOSC", "MFI", "TRIX", "ULTOSC", "DX",
    "MINUS_DI", "PLUS_DI", "MINUS_DM", "PLUS_DM", "BBANDS", "MIDPOINT",
    "MIDPRICE", "SAR", "TRANGE", "ATR", "NATR", "AD", "ADOSC", "OBV",
})


def ttl_for(function: str, overrides: Optional[Dict[str, int]] = None) -> int:
    """查询接口对应的 TTL（秒），配置覆盖优先"""
    if overrides and function in overrides:
        return int(overrides[function])
    if function in ENDPOINT_TTL:
        return ENDPOINT_TTL[function]
    if function in TECHNICAL_INDICATORS:
        return TECHNICAL_INDICATOR_TTL
    return DEFAULT_TTL


_UNSAFE = re.compile(r"[^A-Za-z0-9_]")


def _make_key(namespace: str, *parts: str) -> str:
    """生成规范化缓存键"""
    raw = ":".join([namespace] + [_UNSAFE.sub("_", p) for p in parts])
    if len(raw) > 200:
        raw = namespace + ":" + hashlib.md5(raw.encode()).hexdigest()
    return raw


@dataclass(frozen=True)
class CacheKey:
    """唯一标识一次缓存应答：(代码, 接口名, 可选周期)"""

    symbol: str
    function: str
    interval: Optional[str] = None

    @property
    def storage_key(self) -> str:
        parts = [self.symbol or "_", self.function]
        if self.interval:
            parts.append(self.interval)
        return _make_key(_NAMESPACE, *parts)

    def __str__(self) -> str:
        suffix = f" ({self.interval})" if self.interval else ""
        return f"{self.function} - {self.symbol or '-'}{suffix}"


class CacheEntry(BaseModel):
    """缓存条目：上游原始响应 + 获取时间 + 失败计数与下次重试时间"""

    symbol: str
    function: str
    interval: Optional[str] = None
    payload: Optional[Any] = None
    fetched_at: Optional[float] = None
    ttl: int
    failures: int = 0
    last_failure_at: Optional[float] = None
    next_retry_at: Optional[float] = None

    @property
    def key(self) -> CacheKey:
        return CacheKey(self.symbol, self.function, self.interval)

    @property
    def has_payload(self) -> bool:
        return self.fetched_at is not None and self.payload is not None

    @property
    def last_activity(self) -> float:
        return max(self.fetched_at or 0.0, self.last_failure_at or 0.0)


# ═════════════════════════════════════════════════════════
# 存储后端：只负责按字符串键读写序列化后的文本
# ═════════════════════════════════════════════════════════

class MemoryCacheBackend:
    """进程内存后端（测试 / 单实例部署）"""

    name = "memory"

    def __init__(self):
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, raw: str) -> None:
        self._data[key] = raw

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def scan(self) -> List[Tuple[str, Optional[str]]]:
        return list(self._data.items())


class FileCacheBackend:
    """本地文件后端：每个键一个 JSON 文件"""

    name = "file"

    def __init__(self, cache_dir: str):
        self._dir = cache_dir

    def _path(self, key: str) -> str:
        safe = key.replace(":", "_").replace("/", "_")
        return os.path.join(self._dir, f"{safe}.json")

    async def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as fh:
            return fh.read()

    async def set(self, key: str, raw: str) -> None:
        os.makedirs(self._dir, exist_ok=True)
        # 先写临时文件再替换，避免并发读到半截内容
        tmp = f"{self._path(key)}.{os.getpid()}.{time.monotonic_ns()}.tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            fh.write(raw)
        os.replace(tmp, self._path(key))

    async def delete(self, key: str) -> None:
        path = self._path(key)
        if os.path.exists(path):
            os.remove(path)

    async def scan(self) -> List[Tuple[str, Optional[str]]]:
        if not os.path.exists(self._dir):
            return []
        items = []
        for fname in os.listdir(self._dir):
            if not fname.endswith(".json"):
                continue
            path = os.path.join(self._dir, fname)
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    items.append((fname[:-5], fh.read()))
            except OSError as exc:
                logger.debug(f"文件缓存读取失败: {path}: {exc}")
                items.append((fname[:-5], None))
        return items


class RedisCacheBackend:
    """Redis 后端（redis.asyncio，decode_responses=True）"""

    name = "redis"

    def __init__(self, redis, expire_seconds: Optional[int] = None):
        self._redis = redis
        self._expire = expire_seconds

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def set(self, key: str, raw: str) -> None:
        if self._expire:
            await self._redis.set(key, raw, ex=self._expire)
        else:
            await self._redis.set(key, raw)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def scan(self) -> List[Tuple[str, Optional[str]]]:
        items = []
        async for key in self._redis.scan_iter(match=f"{_NAMESPACE}:*"):
            items.append((key, await self._redis.get(key)))
        return items


class MongoCacheBackend:
    """MongoDB 后端（motor）"""

    name = "mongodb"

    def __init__(self, db, collection: str = "alphavantage_cache"):
        self._col = db[collection]

    async def get(self, key: str) -> Optional[str]:
        doc = await self._col.find_one({"key": key})
        return doc.get("raw") if doc else None

    async def set(self, key: str, raw: str) -> None:
        await self._col.update_one({"key": key}, {"$set": {"key": key, "raw": raw}}, upsert=True)

    async def delete(self, key: str) -> None:
        await self._col.delete_one({"key": key})

    async def scan(self) -> List[Tuple[str, Optional[str]]]:
        return [(doc["key"], doc.get("raw")) async for doc in self._col.find({})]


# ═════════════════════════════════════════════════════════
# 缓存存储
# ═════════════════════════════════════════════════════════

class CacheStore:
    """
    "这个应答是否仍然新鲜？不新鲜的话现在可以重试吗？"的唯一判断来源

    由调用方显式创建并注入 MarketDataService，不存在模块级单例；
    测试可使用独立的 MemoryCacheBackend 与可控时钟。
    """

    def __init__(
        self,
        backend=None,
        *,
        ttl_overrides: Optional[Dict[str, int]] = None,
        backoff_base: int = 60,
        backoff_max: int = 7200,
        max_retries: int = 3,
        cleanup_multiple: int = 24,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend or MemoryCacheBackend()
        self._ttl_overrides = dict(ttl_overrides or {})
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._max_retries = max_retries
        self._cleanup_multiple = cleanup_multiple
        self._clock = clock

    @classmethod
    def from_settings(cls, cfg, backend=None, clock: Callable[[], float] = time.time) -> "CacheStore":
        return cls(
            backend,
            ttl_overrides=cfg.CACHE_TTL_OVERRIDES,
            backoff_base=cfg.BACKOFF_BASE_SECONDS,
            backoff_max=cfg.BACKOFF_MAX_SECONDS,
            max_retries=cfg.CACHE_MAX_RETRIES,
            cleanup_multiple=cfg.CACHE_CLEANUP_TTL_MULTIPLE,
            clock=clock,
        )

    def ttl(self, function: str) -> int:
        return ttl_for(function, self._ttl_overrides)

    # ── 读写 ──────────────────────────────────────────────

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[CacheEntry]:
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate(json.loads(raw))
        except (ValueError, TypeError, ValidationError) as exc:
            logger.debug(f"缓存条目损坏，按未命中处理: {exc}")
            return None

    async def _write(self, entry: CacheEntry) -> None:
        raw = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False, default=str)
        await self.backend.set(entry.key.storage_key, raw)

    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        """纯读取，不产生任何网络副作用；损坏或不可读的条目返回 None"""
        try:
            raw = await self.backend.get(key.storage_key)
        except Exception as exc:
            logger.warning(f"缓存读取失败（{self.backend.name}）: {key}: {exc}")
            return None
        return self._decode(raw)

    async def put(self, key: CacheKey, payload: Any) -> CacheEntry:
        """记录成功应答，并清零失败计数"""
        entry = CacheEntry(
            symbol=key.symbol,
            function=key.function,
            interval=key.interval,
            payload=payload,
            fetched_at=self._clock(),
            ttl=self.ttl(key.function),
        )
        try:
            await self._write(entry)
            logger.debug(f"缓存写入（{self.backend.name}）: {key}")
        except Exception as exc:
            logger.warning(f"缓存写入失败（{self.backend.name}）: {key}: {exc}")
        return entry

    async def delete(self, key: CacheKey) -> None:
        await self.backend.delete(key.storage_key)

    async def clear(self) -> int:
        items = await self.backend.scan()
        for storage_key, _ in items:
            await self.backend.delete(storage_key)
        return len(items)

    # ── 新鲜度与退避 ──────────────────────────────────────

    def is_fresh(self, entry: Optional[CacheEntry]) -> bool:
        if entry is None or not entry.has_payload:
            return False
        return self._clock() - entry.fetched_at < self.ttl(entry.function)

    def in_backoff(self, entry: Optional[CacheEntry]) -> bool:
        if entry is None or entry.failures <= 0 or entry.next_retry_at is None:
            return False
        return self._clock() < entry.next_retry_at

    async def should_use_cache(self, key: CacheKey) -> bool:
        """条目存在、含有应答，且 age < ttl(接口) 时返回 True"""
        return self.is_fresh(await self.get(key))

    async def is_backing_off(self, key: CacheKey) -> bool:
        return self.in_backoff(await self.get(key))

    def backoff_seconds(self, failures: int) -> int:
        """第 n 次连续失败后的退避时长：base * 2^(n-1)，不超过上限"""
        if failures <= 0:
            return 0
        return int(min(self._backoff_base * 2 ** (failures - 1), self._backoff_max))

    async def mark_failed_request(self, key: CacheKey) -> CacheEntry:
        """失败计数 +1 并设置下次重试时间；已有的应答保留不动"""
        now = self._clock()
        entry = await self.get(key)
        if entry is None:
            entry = CacheEntry(
                symbol=key.symbol,
                function=key.function,
                interval=key.interval,
                ttl=self.ttl(key.function),
            )
        entry.failures += 1
        entry.last_failure_at = now
        entry.next_retry_at = now + self.backoff_seconds(entry.failures)
        try:
            await self._write(entry)
        except Exception as exc:
            logger.warning(f"失败记录写入失败（{self.backend.name}）: {key}: {exc}")
        logger.info(
            f"请求失败已记录: {key}，连续失败 {entry.failures} 次，"
            f"{self.backoff_seconds(entry.failures)} 秒内不再重试"
        )
        return entry

    # ── 维护 ──────────────────────────────────────────────

    async def cleanup_old_cache(self) -> int:
        """删除最后活动时间早于 TTL 若干倍的条目，以及无法解析的条目，返回删除数量"""
        now = self._clock()
        removed = 0
        for storage_key, raw in await self.backend.scan():
            entry = self._decode(raw)
            if entry is not None and now - entry.last_activity < self.ttl(entry.function) * self._cleanup_multiple:
                continue
            try:
                await self.backend.delete(storage_key)
                removed += 1
            except Exception as exc:
                logger.warning(f"过期缓存删除失败: {storage_key}: {exc}")
        if removed:
            logger.info(f"缓存清理完成，删除 {removed} 条")
        return removed

    async def stats(self) -> dict:
        """缓存统计：总数 / 成功 / 失败（达到最大重试次数）/ 可重试"""
        now = self._clock()
        entries = [e for e in (self._decode(raw) for _, raw in await self.backend.scan()) if e]
        return {
            "backend": self.backend.name,
            "totalEntries": len(entries),
            "successfulEntries": sum(1 for e in entries if e.failures == 0 and e.has_payload),
            "failedEntries": sum(1 for e in entries if e.failures >= self._max_retries),
            "retryingEntries": sum(
                1 for e in entries
                if 0 < e.failures < self._max_retries and (e.next_retry_at is None or now >= e.next_retry_at)
            ),
            "backingOffEntries": sum(1 for e in entries if self.in_backoff(e)),
        }


def build_backend(cfg, redis=None, mongo_db=None):
    """
    按配置选择存储后端

    auto 模式沿用 Redis → MongoDB → 文件 的降级顺序
    """
    choice = (cfg.CACHE_BACKEND or "auto").lower()
    expire = max(ttl_for(f, cfg.CACHE_TTL_OVERRIDES) for f in ENDPOINT_TTL) * cfg.CACHE_CLEANUP_TTL_MULTIPLE
    if choice == "memory":
        return MemoryCacheBackend()
    if choice == "file":
        return FileCacheBackend(cfg.CACHE_DIR)
    if choice in ("redis", "auto") and redis is not None:
        return RedisCacheBackend(redis, expire_seconds=expire)
    if choice in ("mongodb", "auto") and mongo_db is not None:
        return MongoCacheBackend(mongo_db)
    if choice in ("redis", "mongodb"):
        logger.warning(f"⚠️ 缓存后端 {choice} 不可用，降级为文件缓存")
    return FileCacheBackend(cfg.CACHE_DIR)
