"""
指数聚合服务
按配置顺序为每个跟踪指数并发拉取行情，合并静态配置与标准化数据，输出展示记录列表。

单个指数的任何可恢复错误（传输 / 接口 / 限流 / 标准化 / 退避）只影响它自己，
该指数退回兜底记录；输出长度恒等于配置数量，顺序与配置一致。
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from index_service.errors import IndexDataError, UnknownDataFamilyError
from index_service.instruments import default_instruments, split_pair
from index_service.layers.fallback import (
    DEFAULT_SPARKLINE_POINTS,
    fallback,
    reference_fallback,
    synthesize_sparkline,
)
from index_service.layers.processing import (
    ResponseNormalizer,
    format_change,
    format_price,
    format_volume,
)
from index_service.models.market import (
    DataFamily,
    DisplayIndex,
    InstrumentConfig,
    NormalizedQuote,
    ValuePoint,
)
from index_service.services.market_data_service import MarketDataService

logger = logging.getLogger(__name__)

Builder = Callable[[InstrumentConfig, bool], Awaitable[DisplayIndex]]


@dataclass
class TaskOutcome:
    """单个指数任务的结果：成功时带 value，失败时带 error"""

    ok: bool
    value: Optional[DisplayIndex] = None
    error: Optional[BaseException] = None


class IndexService:
    """指数聚合（扇出 / 扇入）"""

    def __init__(
        self,
        market_data: MarketDataService,
        instruments: Optional[Sequence[InstrumentConfig]] = None,
        *,
        sparkline_points: int = DEFAULT_SPARKLINE_POINTS,
        strict_dispatch: bool = False,
        use_reference_prices: bool = False,
        aggregate_timeout: float = 0,
        rng: Optional[random.Random] = None,
    ):
        self._data = market_data
        self._instruments = tuple(instruments) if instruments is not None else tuple(default_instruments())
        self._points = sparkline_points
        self._strict = strict_dispatch
        self._use_reference = use_reference_prices
        self._timeout = aggregate_timeout
        self._rng = rng or random.Random()
        self._builders: Dict[DataFamily, Builder] = {
            DataFamily.STOCK: self._build_stock,
            DataFamily.CRYPTO: self._build_crypto,
            DataFamily.FOREX: self._build_forex,
            DataFamily.COMMODITY: self._build_commodity,
            DataFamily.ECONOMIC: self._build_economic,
            DataFamily.INTELLIGENCE: self._build_intelligence,
        }

    @classmethod
    def from_settings(
        cls,
        cfg,
        market_data: MarketDataService,
        instruments: Optional[Sequence[InstrumentConfig]] = None,
    ) -> "IndexService":
        return cls(
            market_data,
            instruments,
            sparkline_points=cfg.SPARKLINE_POINTS,
            strict_dispatch=cfg.STRICT_DISPATCH,
            use_reference_prices=cfg.FALLBACK_USE_REFERENCE_PRICES,
            aggregate_timeout=cfg.AGGREGATE_TIMEOUT_SECONDS,
        )

    @property
    def instruments(self) -> List[InstrumentConfig]:
        return list(self._instruments)

    # ── 对外入口 ──────────────────────────────────────────

    async def get_all_real_indices(self, force_refresh: bool = False) -> List[DisplayIndex]:
        """
        获取全部跟踪指数的展示记录

        Args:
            force_refresh: 跳过缓存与失败退避，全部重新请求上游

        Returns:
            与配置等长、同序的 DisplayIndex 列表；失败的指数为兜底记录
        """
        configs = self._instruments
        tasks = [asyncio.ensure_future(self._settle(config, force_refresh)) for config in configs]

        if self._timeout and self._timeout > 0:
            done, pending = await asyncio.wait(tasks, timeout=self._timeout)
            if pending:
                logger.warning(f"⏱️ 聚合超时（{self._timeout}s），{len(pending)} 个指数使用兜底数据")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            outcomes = [
                task.result() if task in done
                else TaskOutcome(ok=False, error=asyncio.TimeoutError())
                for task in tasks
            ]
        else:
            outcomes = await asyncio.gather(*tasks)

        results = [
            outcome.value if outcome.ok else self._fallback(config)
            for config, outcome in zip(configs, outcomes)
        ]
        live = sum(1 for outcome in outcomes if outcome.ok)
        logger.info(f"📊 指数聚合完成: 实时 {live} / 兜底 {len(results) - live} / 共 {len(results)}")
        return results

    async def get_index(self, index_id: str, force_refresh: bool = False) -> Optional[DisplayIndex]:
        """按 id 获取单个指数；id 不存在时返回 None"""
        config = next((c for c in self._instruments if c.id == index_id), None)
        if config is None:
            return None
        outcome = await self._settle(config, force_refresh)
        return outcome.value if outcome.ok else self._fallback(config)

    # ── 单指数任务 ────────────────────────────────────────

    async def _settle(self, config: InstrumentConfig, force_refresh: bool) -> TaskOutcome:
        try:
            builder = self._builders.get(config.family)
            if builder is None:
                raise UnknownDataFamilyError(f"{config.id} 配置了未知数据族: {config.family!r}")
            return TaskOutcome(ok=True, value=await builder(config, force_refresh))
        except IndexDataError as exc:
            logger.warning(f"⚠️ {config.id} 使用兜底数据 [{exc.kind}]: {exc}")
            return TaskOutcome(ok=False, error=exc)
        except Exception as exc:
            if self._strict:
                raise
            logger.error(f"❌ {config.id} 处理异常，使用兜底数据: {exc}", exc_info=True)
            return TaskOutcome(ok=False, error=exc)

    def _fallback(self, config: InstrumentConfig) -> DisplayIndex:
        if self._use_reference:
            return reference_fallback(config, self._points, self._rng)
        return fallback(config, self._points)

    # ── 各数据族构建 ──────────────────────────────────────

    async def _build_stock(self, config: InstrumentConfig, force_refresh: bool) -> DisplayIndex:
        quote = await self._data.get_quote(config.symbol, force_refresh)
        return self._to_display(config, quote, volume_label=format_volume(quote.volume))

    async def _build_crypto(self, config: InstrumentConfig, force_refresh: bool) -> DisplayIndex:
        quote = await self._data.get_crypto_daily(config.symbol, config.market, force_refresh)
        return self._to_display(config, quote, volume_label=format_volume(quote.volume))

    async def _build_forex(self, config: InstrumentConfig, force_refresh: bool) -> DisplayIndex:
        base, quote_currency = split_pair(config.symbol)
        quote = await self._data.get_forex_rate(base, quote_currency, force_refresh)
        return self._to_display(
            config, quote,
            scale=10000,
            value_label=f"{quote.price:.4f}",
            decimals=4,
            volume_label="N/A",
        )

    async def _build_commodity(self, config: InstrumentConfig, force_refresh: bool) -> DisplayIndex:
        points = await self._data.get_commodity(config.symbol, force_refresh=force_refresh)
        quote = ResponseNormalizer.summarize_points(points, config.symbol)
        return self._to_display(config, quote, sparkline=self._history_sparkline(points, quote))

    async def _build_economic(self, config: InstrumentConfig, force_refresh: bool) -> DisplayIndex:
        points = await self._data.get_economic_indicator(config.symbol, force_refresh=force_refresh)
        quote = ResponseNormalizer.summarize_points(points, config.symbol)
        return self._to_display(
            config, quote,
            value_label=f"{quote.price:,.2f}",
            sparkline=self._history_sparkline(points, quote),
        )

    async def _build_intelligence(self, config: InstrumentConfig, force_refresh: bool) -> DisplayIndex:
        quote = await self._data.get_top_mover(config.symbol, force_refresh)
        return self._to_display(config, quote, volume_label=format_volume(quote.volume))

    # ── 组装 ──────────────────────────────────────────────

    def _history_sparkline(self, points: List[ValuePoint], quote: NormalizedQuote) -> List[float]:
        """历史点足够时取最近 N 期，否则按当前值合成"""
        if self._points > 0 and len(points) >= self._points:
            return [p.value for p in points[-self._points:]]
        return synthesize_sparkline(quote.price, quote.change_percent, self._points, self._rng)

    def _to_display(
        self,
        config: InstrumentConfig,
        quote: NormalizedQuote,
        *,
        scale: int = 100,
        value_label: Optional[str] = None,
        decimals: int = 2,
        sparkline: Optional[List[float]] = None,
        volume_label: str = "N/A",
    ) -> DisplayIndex:
        if sparkline is None:
            sparkline = synthesize_sparkline(quote.price, quote.change_percent, self._points, self._rng)
        return DisplayIndex.from_config(
            config,
            current_value=round(quote.price * scale),
            value_label=value_label if value_label is not None else format_price(quote.price),
            price=quote.price,
            sparkline_data=sparkline,
            volume_24h=volume_label,
            last_updated=quote.date,
            **format_change(quote.change, quote.change_percent, decimals),
        )
