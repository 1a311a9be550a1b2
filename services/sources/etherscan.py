"""
EVM (ERC20 / BEP20) transfer source for Etherscan-compatible explorers

One class serves ETH, BSC and MATIC: the explorers share the same API and
differ only in endpoint, API key and token contracts.
"""

import logging
import re
from typing import Dict, List, Tuple

from config import Config
from services.sources.base import Transfer, TransferSource
from utils.exceptions import SourceUnavailableError, TransferNotFoundError
from utils.helpers import scale_integer_amount

logger = logging.getLogger(__name__)

EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

DEFAULT_ENDPOINTS = {
    "ETH": Config.ETHERSCAN_ENDPOINT,
    "BSC": Config.BSCSCAN_ENDPOINT,
    "MATIC": Config.POLYGONSCAN_ENDPOINT,
}

# chain -> token contract (lowercase) -> (symbol, decimals)
KNOWN_TOKENS: Dict[str, Dict[str, Tuple[str, int]]] = {
    "ETH": {
        "0xdac17f958d2ee523a2206206994597c13d831ec7": ("USDT", 6),
        "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48": ("USDC", 6),
    },
    "BSC": {
        "0x55d398326f99059ff775485246999027b3197955": ("USDT", 18),
        "0x8ac76a51cc950d9822d68b83fe1ad97b32cd580d": ("USDC", 18),
    },
    "MATIC": {
        "0xc2132d05d31c914a87c6611c10748aeb04b58e8f": ("USDT", 6),
        "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359": ("USDC", 6),
    },
}


class EtherscanSource(TransferSource):
    """Token transfers to an EVM address via the explorer `tokentx` action"""

    PAGE_SIZE = 100

    def __init__(self, chain: str = "ETH", endpoint: str = None, api_key: str = None, timeout: int = None):
        super().__init__(chain=chain, service_name=f"etherscan:{chain.lower()}", timeout=timeout)
        self.endpoint = (endpoint or DEFAULT_ENDPOINTS.get(chain, Config.ETHERSCAN_ENDPOINT)).rstrip("/")
        self.api_key = api_key or ""

    def normalize_address(self, address):
        # EVM addresses are case-insensitive (EIP-55 casing is only a checksum)
        return (address or "").strip().lower()

    async def get_transfers(self, address: str, since: int) -> List[Transfer]:
        params = {
            "module": "account",
            "action": "tokentx",
            "address": address,
            "page": 1,
            "offset": self.PAGE_SIZE,
            "sort": "desc",
            "apikey": self.api_key,
        }
        data = await self._request_json("GET", f"{self.endpoint}/api", params=params)
        if not isinstance(data, dict):
            raise SourceUnavailableError(f"{self.service_name} unexpected response")

        result = data.get("result")
        if data.get("status") != "1":
            # "No transactions found" is a valid empty answer, anything else is an outage
            if isinstance(result, list) or "no transactions" in str(data.get("message", "")).lower():
                return []
            raise SourceUnavailableError(f"{self.service_name} error: {data.get('message')} {str(result)[:120]}")

        tokens = KNOWN_TOKENS.get(self.chain, {})
        transfers = []
        for row in result or []:
            contract = (row.get("contractAddress") or "").lower()
            token = tokens.get(contract)
            if token is None:
                logger.debug(f"ETHERSCAN_SKIP: {self.chain} ignoring transfer of unknown token contract {contract}")
                continue
            symbol, decimals = token
            try:
                transfers.append(Transfer(
                    hash=row["hash"],
                    from_address=row.get("from", ""),
                    to_address=row.get("to", ""),
                    amount=scale_integer_amount(row["value"], decimals),
                    currency=symbol,
                    timestamp=int(row.get("timeStamp", 0)),
                    block_number=int(row["blockNumber"]) if row.get("blockNumber") else None,
                ))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"⚠️ ETHERSCAN_PARSE: {self.chain} skipping malformed row: {e}")

        return self.filter_transfers(transfers, address, since)

    async def get_transfer(self, tx_hash: str) -> Transfer:
        params = {
            "module": "proxy",
            "action": "eth_getTransactionReceipt",
            "txhash": tx_hash,
            "apikey": self.api_key,
        }
        data = await self._request_json("GET", f"{self.endpoint}/api", params=params)
        receipt = (data or {}).get("result") if isinstance(data, dict) else None
        if not receipt or not isinstance(receipt, dict):
            raise TransferNotFoundError(f"{self.chain} transaction {tx_hash} not found")

        tokens = KNOWN_TOKENS.get(self.chain, {})
        for log in receipt.get("logs") or []:
            topics = log.get("topics") or []
            token = tokens.get((log.get("address") or "").lower())
            if token is None or len(topics) < 3 or topics[0].lower() != TRANSFER_TOPIC:
                continue
            symbol, decimals = token
            return Transfer(
                hash=tx_hash,
                from_address="0x" + topics[1][-40:],
                to_address="0x" + topics[2][-40:],
                amount=scale_integer_amount(int(log.get("data", "0x0"), 16), decimals),
                currency=symbol,
                timestamp=0,
                block_number=int(receipt.get("blockNumber", "0x0"), 16),
                status="confirmed" if receipt.get("status") == "0x1" else "failed",
            )

        raise TransferNotFoundError(f"{self.chain} transaction {tx_hash} has no known token transfer")

    def validate_address(self, address: str) -> bool:
        return isinstance(address, str) and bool(EVM_ADDRESS_RE.match(address))
