"""
Exchange Rate Aggregator
Concurrent fan-out to independent rate sources, arithmetic mean, 5 minute cache

Rate convention: get_rate(from, to) is the price of one unit of `to` expressed
in `from`. With get_rate("CNY", "USDT") == 7.2, an order of 100 CNY settles as
100 / 7.2 USDT.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Sequence

import aiohttp

from caching.simple_cache import SimpleCache
from config import Config
from utils.exceptions import RateUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Rate:
    """An aggregated price; valid while clock() - fetched_at < TTL"""
    from_currency: str
    to_currency: str
    value: Decimal
    fetched_at: float
    source_count: int = 1


class RateSource(ABC):
    """One independent price provider"""

    name = "rate_source"

    def __init__(self, timeout: int = None):
        self.timeout = timeout or Config.EXTERNAL_API_TIMEOUT

    @abstractmethod
    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """Price of one `to_currency` in `from_currency`; raises RateUnavailableError"""

    async def _get_json(self, url: str, params: Dict[str, Any] = None, headers: Dict[str, str] = None) -> Any:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(headers=headers) as session:
                async with session.get(url, params=params, timeout=timeout) as response:
                    if response.status == 429:
                        raise RateUnavailableError(f"{self.name} rate-limited")
                    if response.status != 200:
                        raise RateUnavailableError(f"{self.name} HTTP {response.status}")
                    return await response.json(content_type=None)
        except RateUnavailableError:
            raise
        except asyncio.TimeoutError as e:
            raise RateUnavailableError(f"{self.name} timeout after {self.timeout}s") from e
        except (aiohttp.ClientError, ValueError) as e:
            raise RateUnavailableError(f"{self.name} request failed: {e}") from e

    @staticmethod
    def _positive_decimal(value: Any, source: str) -> Decimal:
        try:
            price = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError) as e:
            raise RateUnavailableError(f"{source} returned a non-numeric price: {value!r}") from e
        if not price.is_finite() or price <= 0:
            raise RateUnavailableError(f"{source} returned a non-positive price: {value!r}")
        return price


class BinanceRateSource(RateSource):
    """Binance spot ticker, symbol = TO + FROM (e.g. USDTCNY for CNY -> USDT)"""

    name = "binance"
    TICKER_URL = "https://api.binance.com/api/v3/ticker/price"

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        symbol = f"{to_currency}{from_currency}".upper()
        data = await self._get_json(self.TICKER_URL, params={"symbol": symbol})
        if not isinstance(data, dict) or "price" not in data:
            raise RateUnavailableError(f"binance has no ticker for {symbol}")
        return self._positive_decimal(data["price"], self.name)


class CoinGeckoRateSource(RateSource):
    """CoinGecko simple price: coin id of `to`, quoted in `from`"""

    name = "coingecko"
    PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"

    COIN_IDS = {
        "USDT": "tether",
        "USDC": "usd-coin",
        "TRX": "tron",
        "TON": "the-open-network",
        "ETH": "ethereum",
        "BNB": "binancecoin",
        "SOL": "solana",
        "MATIC": "matic-network",
        "BTC": "bitcoin",
    }

    def __init__(self, api_key: str = None, timeout: int = None):
        super().__init__(timeout=timeout)
        self.api_key = api_key if api_key is not None else Config.COINGECKO_API_KEY

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        coin_id = self.COIN_IDS.get(to_currency.upper())
        if coin_id is None:
            raise RateUnavailableError(f"coingecko has no coin id for {to_currency}")
        vs_currency = from_currency.lower()

        headers = {"x-cg-demo-api-key": self.api_key} if self.api_key else None
        data = await self._get_json(
            self.PRICE_URL, params={"ids": coin_id, "vs_currencies": vs_currency}, headers=headers
        )
        try:
            return self._positive_decimal(data[coin_id][vs_currency], self.name)
        except (KeyError, TypeError) as e:
            raise RateUnavailableError(f"coingecko has no {coin_id}/{vs_currency} price") from e


class OKXRateSource(RateSource):
    """OKX index ticker, instId = TO-FROM (e.g. USDT-USD)"""

    name = "okx"
    INDEX_URL = "https://www.okx.com/api/v5/market/index-tickers"

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        inst_id = f"{to_currency}-{from_currency}".upper()
        data = await self._get_json(self.INDEX_URL, params={"instId": inst_id})
        if not isinstance(data, dict) or data.get("code") != "0" or not data.get("data"):
            raise RateUnavailableError(f"okx has no index for {inst_id}")
        return self._positive_decimal(data["data"][0].get("idxPx"), self.name)


RATE_SOURCE_TYPES = {
    "binance": BinanceRateSource,
    "coingecko": CoinGeckoRateSource,
    "okx": OKXRateSource,
}


def build_rate_sources(names: Sequence[str] = None) -> List[RateSource]:
    """Instantiate rate sources by name; unknown names are logged and skipped"""
    sources = []
    for name in names if names is not None else Config.RATE_SOURCES:
        source_cls = RATE_SOURCE_TYPES.get(name.lower())
        if source_cls is None:
            logger.warning(f"⚠️ RATE_SOURCES: Unknown rate source '{name}' ignored")
            continue
        sources.append(source_cls())
    return sources


class RateAggregator:
    """
    Owns its cache; no process-wide state.

    A fresh cached value is returned without touching any source. Otherwise
    every source is queried concurrently and the mean of the successes is
    cached. When nothing succeeds the fallback value is returned uncached so
    the next call retries immediately.
    """

    def __init__(
        self,
        sources: Optional[Sequence[RateSource]] = None,
        ttl: int = None,
        timeout: int = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sources: List[RateSource] = list(sources) if sources is not None else build_rate_sources()
        self.ttl = ttl if ttl is not None else Config.RATE_CACHE_TTL
        self.timeout = timeout or Config.EXTERNAL_API_TIMEOUT
        self.fallback = Config.RATE_FALLBACK_VALUE
        self.clock = clock
        self._cache = SimpleCache(default_ttl=self.ttl, clock=clock)

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return Decimal("1")

        cached = self.get_cached_rate(from_currency, to_currency)
        if cached is not None:
            return cached.value

        rates = await self._fetch_rates(from_currency, to_currency)
        if not rates:
            error = RateUnavailableError(f"All rate sources failed for {from_currency}->{to_currency}")
            logger.error(f"❌ RATE_UNAVAILABLE: {error} - using fallback {self.fallback}")
            return self.fallback

        rate = Rate(
            from_currency=from_currency,
            to_currency=to_currency,
            value=sum(rates, Decimal("0")) / Decimal(len(rates)),
            fetched_at=self.clock(),
            source_count=len(rates),
        )
        self._cache.set((from_currency, to_currency), rate)
        logger.info(f"💱 RATE_UPDATED: {from_currency}->{to_currency} = {rate.value} ({len(rates)} sources)")
        return rate.value

    def get_cached_rate(self, from_currency: str, to_currency: str) -> Optional[Rate]:
        """The fresh cached rate for an ordered pair, if any"""
        return self._cache.get((from_currency.upper(), to_currency.upper()))

    async def _fetch_rates(self, from_currency: str, to_currency: str) -> List[Decimal]:
        async def query(source: RateSource) -> Decimal:
            return await asyncio.wait_for(source.get_rate(from_currency, to_currency), timeout=self.timeout)

        results = await asyncio.gather(*(query(s) for s in self.sources), return_exceptions=True)

        rates = []
        for source, result in zip(self.sources, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning(f"⚠️ RATE_SOURCE_FAILED: {source.name} {from_currency}->{to_currency}: {result}")
                continue
            rates.append(result)
        return rates

    def invalidate(self, from_currency: str = None, to_currency: str = None) -> None:
        """Drop one cached pair, or the whole cache when no pair is given"""
        if from_currency and to_currency:
            self._cache.delete((from_currency.upper(), to_currency.upper()))
        else:
            self._cache.clear()

    def get_cache_stats(self) -> Dict[str, Any]:
        return self._cache.get_stats()
