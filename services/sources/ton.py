"""
TON transfer source backed by toncenter (native TON, incoming messages)
"""

import base64
import logging
import re
from decimal import Decimal
from typing import Dict, List, Optional

from config import Config
from services.sources.base import Transfer, TransferSource
from utils.exceptions import SourceUnavailableError, TransferNotFoundError

logger = logging.getLogger(__name__)

NANOTON = Decimal(10) ** 9
RAW_ADDRESS_RE = re.compile(r"^-?\d+:[0-9a-fA-F]{64}$")
FRIENDLY_ADDRESS_RE = re.compile(r"^[A-Za-z0-9_\-+/]{48}$")


class TonCenterSource(TransferSource):
    """Incoming native TON transfers for a wallet"""

    PAGE_LIMIT = 50

    def __init__(self, endpoint: str = None, api_key: str = None, chain: str = "TON", timeout: int = None):
        super().__init__(chain=chain, service_name="toncenter", timeout=timeout)
        self.endpoint = (endpoint or Config.TONCENTER_ENDPOINT).rstrip("/")
        self.api_key = api_key or ""

    def _headers(self) -> Dict[str, str]:
        return {"X-API-Key": self.api_key} if self.api_key else {}

    def _parse(self, row: Dict) -> Optional[Transfer]:
        in_msg = row.get("in_msg") or {}
        value = in_msg.get("value")
        if not value or not in_msg.get("source"):
            # External messages carry no value transfer
            return None
        tx_id = row.get("transaction_id") or {}
        return Transfer(
            hash=tx_id.get("hash") or row.get("hash", ""),
            from_address=in_msg.get("source", ""),
            to_address=in_msg.get("destination", ""),
            amount=Decimal(str(value)) / NANOTON,
            currency="TON",
            timestamp=int(row.get("utime") or row.get("now") or 0),
            block_number=int(tx_id["lt"]) if tx_id.get("lt") else None,
        )

    async def get_transfers(self, address: str, since: int) -> List[Transfer]:
        params = {"address": address, "limit": self.PAGE_LIMIT, "archival": "true"}
        data = await self._request_json(
            "GET", f"{self.endpoint}/getTransactions", params=params, headers=self._headers()
        )
        if not isinstance(data, dict) or not data.get("ok"):
            raise SourceUnavailableError(f"toncenter error: {str(data)[:200]}")

        transfers = []
        for row in data.get("result") or []:
            try:
                transfer = self._parse(row)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"⚠️ TONCENTER_PARSE: Skipping malformed row: {e}")
                continue
            if transfer is not None:
                transfers.append(transfer)

        return self.filter_transfers(transfers, address, since)

    async def get_transfer(self, tx_hash: str) -> Transfer:
        # Point lookup by hash only exists on the v3 index API
        v3 = re.sub(r"/api/v2$", "/api/v3", self.endpoint)
        data = await self._request_json(
            "GET", f"{v3}/transactions", params={"hash": tx_hash, "limit": 1},
            headers=self._headers(), allow_not_found=True,
        )
        rows = (data or {}).get("transactions") or []
        if not rows:
            raise TransferNotFoundError(f"TON transaction {tx_hash} not found")

        row = rows[0]
        in_msg = row.get("in_msg") or {}
        if not in_msg.get("value"):
            raise TransferNotFoundError(f"TON transaction {tx_hash} carries no value")
        return Transfer(
            hash=tx_hash,
            from_address=in_msg.get("source") or "",
            to_address=in_msg.get("destination") or row.get("account", ""),
            amount=Decimal(str(in_msg["value"])) / NANOTON,
            currency="TON",
            timestamp=int(row.get("now") or 0),
            block_number=int(row["lt"]) if row.get("lt") else None,
        )

    def validate_address(self, address: str) -> bool:
        if not isinstance(address, str):
            return False
        if RAW_ADDRESS_RE.match(address):
            return True
        if not FRIENDLY_ADDRESS_RE.match(address):
            return False
        try:
            return len(base64.urlsafe_b64decode(address.replace("+", "-").replace("/", "_"))) == 36
        except ValueError:
            return False
