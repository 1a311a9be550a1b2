"""
OKX exchange deposit source

Deposits credited to an OKX account are matched the same way as on-chain
transfers; the "address" is the deposit address OKX assigned to the account.
"""

import base64
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional
from urllib.parse import urlencode

from config import Config
from services.sources.base import Transfer, TransferSource
from utils.exceptions import SourceUnavailableError, TransferNotFoundError

logger = logging.getLogger(__name__)

DEPOSIT_HISTORY_PATH = "/api/v5/asset/deposit-history"

# Deposit states: 0 waiting, 1 credited, 2 successful
STATE_SUCCESSFUL = "2"


class OKXDepositSource(TransferSource):
    """HMAC-signed access to the OKX deposit history"""

    PAGE_LIMIT = 50

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        passphrase: str,
        endpoint: str = None,
        chain: str = "OKX",
        timeout: int = None,
    ):
        super().__init__(chain=chain, service_name="okx", timeout=timeout)
        self.endpoint = (endpoint or Config.OKX_ENDPOINT).rstrip("/")
        self.api_key = api_key or ""
        self.api_secret = api_secret or ""
        self.passphrase = passphrase or ""

    @staticmethod
    def _timestamp() -> str:
        now = datetime.now(timezone.utc)
        return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"

    def sign(self, timestamp: str, method: str, request_path: str, body: str = "") -> str:
        """base64(HMAC-SHA256(secret, timestamp + METHOD + path + body))"""
        message = f"{timestamp}{method.upper()}{request_path}{body}"
        digest = hmac.new(self.api_secret.encode(), message.encode(), hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def _signed_headers(self, method: str, request_path: str) -> Dict[str, str]:
        timestamp = self._timestamp()
        return {
            "OK-ACCESS-KEY": self.api_key,
            "OK-ACCESS-SIGN": self.sign(timestamp, method, request_path),
            "OK-ACCESS-TIMESTAMP": timestamp,
            "OK-ACCESS-PASSPHRASE": self.passphrase,
            "Content-Type": "application/json",
        }

    async def _deposit_history(self, params: Dict[str, str]) -> List[Dict]:
        request_path = f"{DEPOSIT_HISTORY_PATH}?{urlencode(params)}"
        data = await self._request_json(
            "GET",
            f"{self.endpoint}{request_path}",
            headers=self._signed_headers("GET", request_path),
        )
        if not isinstance(data, dict) or data.get("code") != "0":
            message = data.get("msg") if isinstance(data, dict) else str(data)[:200]
            raise SourceUnavailableError(f"okx deposit-history error: {message}")
        return data.get("data") or []

    def _parse(self, row: Dict) -> Optional[Transfer]:
        if row.get("state") != STATE_SUCCESSFUL:
            return None
        return Transfer(
            hash=row.get("txId") or row.get("depId", ""),
            from_address=row.get("from", ""),
            to_address=row.get("to", ""),
            amount=Decimal(str(row["amt"])),
            currency=self.canonical_currency(row.get("ccy")),
            timestamp=int(row.get("ts", 0)) // 1000,
        )

    async def get_transfers(self, address: str, since: int) -> List[Transfer]:
        rows = await self._deposit_history({"limit": str(self.PAGE_LIMIT)})

        transfers = []
        for row in rows:
            try:
                transfer = self._parse(row)
            except (KeyError, ValueError, TypeError, ArithmeticError) as e:
                logger.warning(f"⚠️ OKX_PARSE: Skipping malformed deposit: {e}")
                continue
            if transfer is not None:
                transfers.append(transfer)

        return self.filter_transfers(transfers, address, since)

    async def get_transfer(self, tx_hash: str) -> Transfer:
        rows = await self._deposit_history({"txId": tx_hash})
        for row in rows:
            transfer = self._parse(row)
            if transfer is not None:
                return transfer
        raise TransferNotFoundError(f"OKX deposit {tx_hash} not found")

    def validate_address(self, address: str) -> bool:
        return isinstance(address, str) and 20 <= len(address) <= 128 and not any(c.isspace() for c in address)
