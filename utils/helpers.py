"""Identifier and amount helpers"""

import secrets
import time
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any

from config import Config


def generate_order_id(prefix: str = None) -> str:
    """
    Generate an unguessable order id.

    Format: PREFIX + 16 hex chars (8 random bytes) + up to 6 digits of the
    current unix time, e.g. PAY3f9a0c1d2e4b5a6f123456
    """
    prefix = Config.ORDER_ID_PREFIX if prefix is None else prefix
    return f"{prefix}{secrets.token_hex(8)}{int(time.time()) % 1000000}"


def to_decimal(value: Any) -> Decimal:
    """Convert int/float/str to Decimal via str() to avoid binary float artifacts"""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValueError(f"Not a decimal amount: {value!r}") from e


def quantize_amount(value: Decimal, places: int = None) -> Decimal:
    """Round a settlement amount to the configured number of decimal places"""
    places = Config.PAY_AMOUNT_DECIMALS if places is None else places
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def scale_integer_amount(raw: Any, decimals: Any) -> Decimal:
    """Convert an integer on-chain amount (e.g. '13890000', 6) to its decimal value"""
    return to_decimal(raw).scaleb(-int(decimals))
