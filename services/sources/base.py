"""
Transfer Source Contract
Base class for every chain / exchange adapter the reconciliation scheduler polls

Adapters differ in decimals, units and pagination. All normalization happens
here, inside the adapter: the rest of the engine only sees Transfer values with
a canonical Decimal amount and a canonical currency symbol.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from config import Config
from utils.exceptions import SourceUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transfer:
    """A third-party-reported movement of value. Never persisted unless matched."""
    hash: str
    from_address: str
    to_address: str
    amount: Decimal
    currency: str
    timestamp: int
    block_number: Optional[int] = None
    status: str = "confirmed"


class TransferSource(ABC):
    """
    Uniform access to one external ledger (a chain explorer or an exchange)

    Contract:
    - get_transfers() returns only transfers to `address` at or after `since`;
      ordering is not guaranteed.
    - Transport and parse failures raise SourceUnavailableError.
    - get_transfer() raises TransferNotFoundError for unknown hashes.
    - validate_address() is a format check only.
    """

    # Canonical symbols; adapters map provider spellings onto these
    CURRENCY_ALIASES: Dict[str, str] = {
        "USDT": "USDT", "TETHER": "USDT", "USD₮": "USDT", "USDT-TRC20": "USDT",
        "USDT-ERC20": "USDT", "USDC": "USDC", "TRX": "TRX", "ETH": "ETH",
        "BNB": "BNB", "MATIC": "MATIC", "POL": "MATIC", "SOL": "SOL", "TON": "TON",
    }

    def __init__(self, chain: str, service_name: str, timeout: int = None):
        self.chain = chain
        self.service_name = service_name
        self.timeout = timeout or Config.EXTERNAL_API_TIMEOUT
        logger.info(f"🔧 TransferSource initialized: {service_name} for {chain}")

    @abstractmethod
    async def get_transfers(self, address: str, since: int) -> List[Transfer]:
        """Transfers observed at or after unix time `since` whose destination is `address`"""

    @abstractmethod
    async def get_transfer(self, tx_hash: str) -> Transfer:
        """Point lookup by external identifier"""

    @abstractmethod
    def validate_address(self, address: str) -> bool:
        """Format-level address validation (no existence check)"""

    # ------------------------------------------------------------------
    # Normalization helpers
    # ------------------------------------------------------------------

    def normalize_address(self, address: Optional[str]) -> str:
        """Address form used for destination comparison"""
        return (address or "").strip()

    def canonical_currency(self, symbol: Optional[str]) -> str:
        symbol = (symbol or "").strip().upper()
        return self.CURRENCY_ALIASES.get(symbol, symbol)

    def filter_transfers(self, transfers: Iterable[Transfer], address: str, since: int) -> List[Transfer]:
        """Keep transfers to `address` at or after `since` (providers may return unrelated rows)"""
        wanted = self.normalize_address(address)
        return [
            t for t in transfers
            if self.normalize_address(t.to_address) == wanted and t.timestamp >= since
        ]

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _request_json(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        allow_not_found: bool = False,
    ) -> Any:
        """
        Perform one HTTP request with a bounded timeout and decode JSON.

        Returns None for 404 when allow_not_found is set; every other failure
        raises SourceUnavailableError.
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(headers=headers) as session:
                async with session.request(
                    method, url, params=params, json=json_body, timeout=timeout
                ) as response:
                    if response.status == 404 and allow_not_found:
                        return None
                    if response.status == 429:
                        raise SourceUnavailableError(f"{self.service_name} rate-limited")
                    if response.status >= 400:
                        text = await response.text()
                        raise SourceUnavailableError(
                            f"{self.service_name} HTTP {response.status}: {text[:200]}"
                        )
                    return await response.json(content_type=None)
        except SourceUnavailableError:
            raise
        except asyncio.TimeoutError as e:
            raise SourceUnavailableError(f"{self.service_name} timeout after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise SourceUnavailableError(f"{self.service_name} transport error: {e}") from e
        except ValueError as e:
            raise SourceUnavailableError(f"{self.service_name} returned invalid JSON: {e}") from e

    def __repr__(self):
        return f"<{type(self).__name__}(chain={self.chain})>"
