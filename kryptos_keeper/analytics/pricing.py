from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Callable

from loguru import logger

from kryptos_keeper.aggregators import jupiter
from kryptos_keeper.models import PRICE_SCALE


def price_to_fixed(price) -> int:
    """Convert a decimal USD price to the 6-decimal integer form used on-chain, rounding toward zero."""
    try:
        d = Decimal(str(price))
    except InvalidOperation:
        return 0
    if not d.is_finite():
        return 0
    return int((d * PRICE_SCALE).to_integral_value(rounding=ROUND_DOWN))


def price_from_fixed(fixed: int) -> Decimal:
    return Decimal(fixed) / PRICE_SCALE


@dataclass
class PriceOracle:
    price_url: str
    ttl_sec: float = 10.0
    timeout: float = 10.0
    clock: Callable[[], float] = time.monotonic
    # mint -> (price, fetched_at); last writer wins on refresh
    _cache: dict[str, tuple[Decimal, float]] = field(default_factory=dict)

    def _cached(self, mint: str) -> Decimal | None:
        hit = self._cache.get(mint)
        if hit and self.clock() - hit[1] < self.ttl_sec:
            return hit[0]
        return None

    def get_price(self, mint: str) -> Decimal:
        """Current USD price for a mint; Decimal(0) when it cannot be fetched."""
        cached = self._cached(mint)
        if cached is not None:
            return cached
        try:
            prices = jupiter.get_prices(self.price_url, [mint], timeout=self.timeout)
        except Exception as e:
            logger.warning("Price fetch failed for {}: {}", mint[:8], e)
            return Decimal(0)
        raw = prices.get(mint)
        if raw is None:
            logger.warning("No price returned for {}", mint[:8])
            return Decimal(0)
        try:
            price = Decimal(raw)
        except InvalidOperation:
            logger.warning("Unparseable price for {}: {}", mint[:8], raw)
            return Decimal(0)
        self._cache[mint] = (price, self.clock())
        logger.debug("Price for {}...: ${}", mint[:8], price)
        return price

    def get_prices(self, mints: list[str]) -> dict[str, Decimal]:
        out: dict[str, Decimal] = {}
        missing = []
        for m in mints:
            cached = self._cached(m)
            if cached is not None:
                out[m] = cached
            else:
                missing.append(m)
        if not missing:
            return out
        try:
            fetched = jupiter.get_prices(self.price_url, missing, timeout=self.timeout)
        except Exception as e:
            logger.warning("Batch price fetch failed: {}", e)
            fetched = {}
        now = self.clock()
        for m in missing:
            try:
                price = Decimal(fetched[m]) if m in fetched else Decimal(0)
            except InvalidOperation:
                price = Decimal(0)
            if price > 0:
                self._cache[m] = (price, now)
            out[m] = price
        return out

    def get_price_fixed(self, mint: str) -> int:
        return price_to_fixed(self.get_price(mint))
