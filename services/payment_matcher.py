"""
Payment Matcher
Pairs observed transfers with pending orders that share a destination address

Matching is deterministic for a given (orders, transfers) input:
- transfers are considered in the order the source returned them
- duplicate transfer hashes are considered once
- an order matches a transfer iff |T - A| < tolerance * A and currencies agree
- a matched order (and its transfer) leave the candidate set for the cycle
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Sequence

from config import Config

logger = logging.getLogger(__name__)

POLICY_FIRST = "first"
POLICY_CLOSEST = "closest"
MATCH_POLICIES = (POLICY_FIRST, POLICY_CLOSEST)


@dataclass
class Match:
    order: object
    transfer: object

    @property
    def difference(self) -> Decimal:
        return abs(Decimal(self.transfer.amount) - Decimal(self.order.pay_amount))


def tolerance_fraction(percent: Decimal = None) -> Decimal:
    percent = Config.MATCH_TOLERANCE_PERCENT if percent is None else Decimal(percent)
    return percent / Decimal(100)


def within_tolerance(transfer_amount: Decimal, expected_amount: Decimal, tolerance: Decimal = None) -> bool:
    """
    True when the transfer is within tolerance of the expected amount.

    The bound is strict: with 1 % tolerance, exactly 1.01 * A does not match.
    """
    if expected_amount is None or expected_amount <= 0:
        return False
    tolerance = tolerance_fraction() if tolerance is None else tolerance
    return abs(Decimal(transfer_amount) - Decimal(expected_amount)) < tolerance * Decimal(expected_amount)


def _same_currency(order, transfer) -> bool:
    # Orders without a recorded settlement currency accept any currency
    if not order.pay_currency or not transfer.currency:
        return True
    return order.pay_currency.upper() == transfer.currency.upper()


def match_transfers(
    orders: Sequence,
    transfers: Sequence,
    policy: str = None,
    tolerance: Decimal = None,
) -> List[Match]:
    """
    Pair transfers with orders.

    `first` picks the first unmatched order (in the given order) within
    tolerance; `closest` picks the unmatched order with the smallest absolute
    difference, ties resolved by order position.
    """
    policy = (policy or Config.MATCH_POLICY or POLICY_FIRST).lower()
    if policy not in MATCH_POLICIES:
        logger.warning(f"⚠️ MATCHER: Unknown policy '{policy}', falling back to '{POLICY_FIRST}'")
        policy = POLICY_FIRST
    tolerance = tolerance_fraction() if tolerance is None else tolerance

    remaining = list(orders)
    seen_hashes = set()
    matches: List[Match] = []

    for transfer in transfers:
        if not remaining:
            break
        if transfer.hash in seen_hashes:
            continue
        seen_hashes.add(transfer.hash)

        candidates = [
            o for o in remaining
            if _same_currency(o, transfer) and within_tolerance(transfer.amount, o.pay_amount, tolerance)
        ]
        if not candidates:
            continue

        if policy == POLICY_CLOSEST:
            chosen = min(candidates, key=lambda o: abs(Decimal(transfer.amount) - Decimal(o.pay_amount)))
        else:
            chosen = candidates[0]

        remaining.remove(chosen)
        matches.append(Match(order=chosen, transfer=transfer))
        logger.debug(f"🔗 MATCHER: {transfer.hash} -> {chosen.id} ({transfer.amount} vs {chosen.pay_amount})")

    return matches
