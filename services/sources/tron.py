"""
TRON (TRC20) transfer source backed by the TronGrid API
"""

import logging
from typing import Dict, List, Tuple

from config import Config
from services.sources.base import Transfer, TransferSource
from utils.exceptions import SourceUnavailableError, TransferNotFoundError
from utils.helpers import scale_integer_amount

logger = logging.getLogger(__name__)

BASE58_ALPHABET = set("123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz")

# TRC20 contracts the engine settles in: contract -> (symbol, decimals)
KNOWN_TRC20_TOKENS: Dict[str, Tuple[str, int]] = {
    "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t": ("USDT", 6),
    "TEkxiTehnzSmSe2XqrBj4w32RUN966rdz8": ("USDC", 6),
}


class TronGridSource(TransferSource):
    """TRC20 token transfers to a TRON address"""

    PAGE_LIMIT = 50

    def __init__(self, endpoint: str = None, api_key: str = None, chain: str = "TRON", timeout: int = None):
        super().__init__(chain=chain, service_name="trongrid", timeout=timeout)
        self.endpoint = (endpoint or Config.TRONGRID_ENDPOINT).rstrip("/")
        self.api_key = api_key or ""

    def _headers(self) -> Dict[str, str]:
        return {"TRON-PRO-API-KEY": self.api_key} if self.api_key else {}

    async def get_transfers(self, address: str, since: int) -> List[Transfer]:
        url = f"{self.endpoint}/v1/accounts/{address}/transactions/trc20"
        params = {
            "limit": self.PAGE_LIMIT,
            "only_confirmed": "true",
            "only_to": "true",
            "min_timestamp": since * 1000,
        }
        data = await self._request_json("GET", url, params=params, headers=self._headers())
        if not isinstance(data, dict) or not data.get("success", True):
            raise SourceUnavailableError(f"trongrid error response for {address}: {str(data)[:200]}")

        transfers = []
        for row in data.get("data") or []:
            contract = (row.get("token_info") or {}).get("address", "")
            token = KNOWN_TRC20_TOKENS.get(contract)
            if token is None:
                logger.debug(f"TRONGRID_SKIP: Ignoring transfer of unknown token contract {contract}")
                continue
            symbol, decimals = token
            try:
                transfers.append(Transfer(
                    hash=row["transaction_id"],
                    from_address=row.get("from", ""),
                    to_address=row.get("to", ""),
                    amount=scale_integer_amount(row["value"], decimals),
                    currency=symbol,
                    timestamp=int(row.get("block_timestamp", 0)) // 1000,
                ))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"⚠️ TRONGRID_PARSE: Skipping malformed row: {e}")

        return self.filter_transfers(transfers, address, since)

    async def get_transfer(self, tx_hash: str) -> Transfer:
        url = f"{self.endpoint}/v1/transactions/{tx_hash}/events"
        data = await self._request_json("GET", url, headers=self._headers(), allow_not_found=True)
        events = (data or {}).get("data") or []

        for event in events:
            if event.get("event_name") != "Transfer":
                continue
            token = KNOWN_TRC20_TOKENS.get(event.get("contract_address", ""))
            if token is None:
                continue
            symbol, decimals = token
            result = event.get("result") or {}
            return Transfer(
                hash=tx_hash,
                from_address=result.get("from", ""),
                to_address=result.get("to", ""),
                amount=scale_integer_amount(result.get("value", "0"), decimals),
                currency=symbol,
                timestamp=int(event.get("block_timestamp", 0)) // 1000,
                block_number=event.get("block_number"),
            )

        raise TransferNotFoundError(f"TRON transaction {tx_hash} not found")

    def validate_address(self, address: str) -> bool:
        return (
            isinstance(address, str)
            and len(address) == 34
            and address.startswith("T")
            and set(address) <= BASE58_ALPHABET
        )
