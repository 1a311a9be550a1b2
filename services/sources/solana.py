"""
Solana transfer source over JSON-RPC (native SOL and SPL tokens)
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from config import Config
from services.sources.base import Transfer, TransferSource
from utils.exceptions import SourceUnavailableError, TransferNotFoundError

logger = logging.getLogger(__name__)

BASE58_ALPHABET = set("123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz")
LAMPORTS_PER_SOL = Decimal(10) ** 9

KNOWN_MINTS = {
    "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB": "USDT",
    "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v": "USDC",
}


class SolanaRpcSource(TransferSource):
    """Balance-delta based transfer detection for a Solana wallet"""

    SIGNATURE_LIMIT = 50
    DETAIL_CONCURRENCY = 5

    def __init__(self, endpoint: str = None, api_key: str = None, chain: str = "SOL", timeout: int = None):
        super().__init__(chain=chain, service_name="solana_rpc", timeout=timeout)
        self.endpoint = endpoint or Config.SOLANA_RPC_ENDPOINT
        self.api_key = api_key or ""

    async def _rpc(self, method: str, params: list) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        data = await self._request_json("POST", self.endpoint, headers=headers, json_body=payload)
        if not isinstance(data, dict):
            raise SourceUnavailableError(f"solana_rpc unexpected response to {method}")
        if data.get("error"):
            raise SourceUnavailableError(f"solana_rpc {method} error: {data['error']}")
        return data.get("result")

    async def get_transfers(self, address: str, since: int) -> List[Transfer]:
        signatures = await self._rpc(
            "getSignaturesForAddress", [address, {"limit": self.SIGNATURE_LIMIT}]
        ) or []

        wanted = [
            s["signature"] for s in signatures
            if not s.get("err")
            and s.get("confirmationStatus") == "finalized"
            and (s.get("blockTime") or 0) >= since
        ]

        semaphore = asyncio.Semaphore(self.DETAIL_CONCURRENCY)

        async def fetch(signature: str) -> Optional[Transfer]:
            async with semaphore:
                tx = await self._rpc(
                    "getTransaction",
                    [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0}],
                )
            return self._parse_incoming(signature, tx, address)

        results = await asyncio.gather(*(fetch(sig) for sig in wanted))
        return self.filter_transfers([t for t in results if t is not None], address, since)

    def _parse_incoming(self, signature: str, tx: Optional[Dict], address: str) -> Optional[Transfer]:
        """Derive the amount credited to `address` from pre/post balances"""
        if not tx:
            return None
        meta = tx.get("meta") or {}
        block_time = int(tx.get("blockTime") or 0)
        slot = tx.get("slot")

        # SPL tokens first: stablecoin settlement is the common case
        pre_tokens = {
            (b.get("mint"), b.get("owner")): Decimal(str((b.get("uiTokenAmount") or {}).get("uiAmountString") or "0"))
            for b in meta.get("preTokenBalances") or []
        }
        for balance in meta.get("postTokenBalances") or []:
            mint, owner = balance.get("mint"), balance.get("owner")
            if owner != address or mint not in KNOWN_MINTS:
                continue
            post = Decimal(str((balance.get("uiTokenAmount") or {}).get("uiAmountString") or "0"))
            delta = post - pre_tokens.get((mint, owner), Decimal("0"))
            if delta > 0:
                return Transfer(
                    hash=signature, from_address="", to_address=address, amount=delta,
                    currency=KNOWN_MINTS[mint], timestamp=block_time, block_number=slot,
                )

        # Native SOL
        keys = ((tx.get("transaction") or {}).get("message") or {}).get("accountKeys") or []
        keys = [k.get("pubkey") if isinstance(k, dict) else k for k in keys]
        if address in keys:
            idx = keys.index(address)
            pre = meta.get("preBalances") or []
            post = meta.get("postBalances") or []
            if idx < len(pre) and idx < len(post) and post[idx] > pre[idx]:
                sender = keys[0] if keys else ""
                return Transfer(
                    hash=signature, from_address=sender, to_address=address,
                    amount=Decimal(post[idx] - pre[idx]) / LAMPORTS_PER_SOL,
                    currency="SOL", timestamp=block_time, block_number=slot,
                )
        return None

    async def get_transfer(self, tx_hash: str) -> Transfer:
        tx = await self._rpc(
            "getTransaction",
            [tx_hash, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0}],
        )
        if not tx:
            raise TransferNotFoundError(f"Solana transaction {tx_hash} not found")

        keys = ((tx.get("transaction") or {}).get("message") or {}).get("accountKeys") or []
        keys = [k.get("pubkey") if isinstance(k, dict) else k for k in keys]
        owners = [b.get("owner") for b in (tx.get("meta") or {}).get("postTokenBalances") or []]
        for candidate in owners + keys[1:]:
            transfer = self._parse_incoming(tx_hash, tx, candidate)
            if transfer is not None:
                return transfer
        raise TransferNotFoundError(f"Solana transaction {tx_hash} carries no incoming transfer")

    def validate_address(self, address: str) -> bool:
        return (
            isinstance(address, str)
            and 32 <= len(address) <= 44
            and set(address) <= BASE58_ALPHABET
        )
