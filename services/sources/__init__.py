"""Transfer source adapters and the factory that builds them from configuration"""

import logging

from services.sources.base import Transfer, TransferSource
from services.sources.binance import BinanceDepositSource
from services.sources.etherscan import EtherscanSource
from services.sources.okx import OKXDepositSource
from services.sources.solana import SolanaRpcSource
from services.sources.ton import TonCenterSource
from services.sources.tron import TronGridSource
from utils.exceptions import InvalidInputError

logger = logging.getLogger(__name__)

SOURCE_TYPES = {
    "trongrid": TronGridSource,
    "etherscan": EtherscanSource,
    "solana_rpc": SolanaRpcSource,
    "toncenter": TonCenterSource,
    "okx": OKXDepositSource,
    "binance": BinanceDepositSource,
}


def build_source(config) -> TransferSource:
    """Create an adapter from a SourceConfig row (or any object with the same attributes)"""
    source_type = (config.source_type or "").lower()
    if source_type not in SOURCE_TYPES:
        raise InvalidInputError(f"Unknown source type '{config.source_type}' for chain {config.chain}")

    if source_type == "okx":
        return OKXDepositSource(
            api_key=config.api_key,
            api_secret=config.api_secret,
            passphrase=config.passphrase,
            endpoint=config.endpoint,
            chain=config.chain,
        )
    if source_type == "binance":
        return BinanceDepositSource(
            api_key=config.api_key,
            api_secret=config.api_secret,
            endpoint=config.endpoint,
            chain=config.chain,
        )
    return SOURCE_TYPES[source_type](
        chain=config.chain, endpoint=config.endpoint, api_key=config.api_key
    )


__all__ = [
    "Transfer",
    "TransferSource",
    "TronGridSource",
    "EtherscanSource",
    "SolanaRpcSource",
    "TonCenterSource",
    "OKXDepositSource",
    "BinanceDepositSource",
    "SOURCE_TYPES",
    "build_source",
]
