"""
Order Ledger
Order lifecycle: creation, payment method selection, confirmation, expiry

All storage work runs in a worker thread (asyncio.to_thread) with one
transaction per operation. Status changes are single-row conditional UPDATEs
guarded by `status = 'pending'`, so concurrent confirmation attempts for the
same order resolve to exactly one winner.
"""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from config import Config
from database import SessionLocal, managed_session
from models import Order, OrderStatus, PaymentTransaction, Site, SystemConfig
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import (
    InvalidAddressError,
    InvalidAmountError,
    InvalidInputError,
    OrderExpiredError,
    OrderNotFoundError,
    OrderNotPendingError,
    SiteNotFoundError,
)
from utils.helpers import generate_order_id, quantize_amount, to_decimal
from utils.order_state_machine import OrderStateValidator

logger = logging.getLogger(__name__)

TIMEOUT_CONFIG_KEY = "timeout"


class OrderService:
    """Order ledger backed by the orders / payment_transactions tables"""

    def __init__(
        self,
        rate_aggregator=None,
        session_factory: sessionmaker = None,
        source_lookup: Optional[Callable[[str], Any]] = None,
        notification_service=None,
    ):
        self.rate_aggregator = rate_aggregator
        self.session_factory = session_factory or SessionLocal
        # chain -> TransferSource (or None); used for address format checks
        self.source_lookup = source_lookup
        self.notification_service = notification_service

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def get_order_timeout(self) -> int:
        """Order lifetime in seconds: system_config 'timeout' overrides the default"""
        with managed_session(self.session_factory) as session:
            row = session.get(SystemConfig, TIMEOUT_CONFIG_KEY)
            if row is not None:
                try:
                    timeout = int(row.value)
                    if timeout > 0:
                        return timeout
                except (TypeError, ValueError):
                    pass
                logger.warning(f"⚠️ ORDER_TIMEOUT: Ignoring invalid system_config timeout {row.value!r}")
        return Config.ORDER_TIMEOUT_SECONDS

    async def create_order(self, amount, currency: str, site_id: str = None) -> Order:
        try:
            amount = to_decimal(amount)
        except ValueError as e:
            raise InvalidAmountError(str(e)) from e
        if not amount.is_finite() or amount <= 0:
            raise InvalidAmountError(f"Order amount must be positive, got {amount}")
        if not currency or not currency.strip():
            raise InvalidInputError("Order currency is required")

        return await asyncio.to_thread(self._create_order, amount, currency.strip().upper(), site_id)

    def _create_order(self, amount: Decimal, currency: str, site_id: Optional[str]) -> Order:
        timeout = self.get_order_timeout()
        now = get_naive_utc_now()

        with managed_session(self.session_factory) as session:
            if site_id is not None and session.get(Site, site_id) is None:
                raise SiteNotFoundError(f"Site {site_id} not found")

            order = Order(
                id=generate_order_id(),
                amount=amount,
                currency=currency,
                status=OrderStatus.PENDING.value,
                site_id=site_id,
                expire_at=now + timedelta(seconds=timeout),
                created_at=now,
                updated_at=now,
            )
            session.add(order)

        logger.info(f"🧾 ORDER_CREATED: {order.id} {amount} {currency} (expires in {timeout}s)")
        return order

    async def get_order(self, order_id: str) -> Order:
        return await asyncio.to_thread(self._get_order, order_id)

    def _get_order(self, order_id: str) -> Order:
        with managed_session(self.session_factory) as session:
            order = session.get(Order, order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
            return order

    async def get_pending_orders(self) -> List[Order]:
        """Pending orders that have not yet reached their expiry time"""
        return await asyncio.to_thread(self._get_pending_orders)

    def _get_pending_orders(self) -> List[Order]:
        now = get_naive_utc_now()
        with managed_session(self.session_factory) as session:
            stmt = (
                select(Order)
                .where(Order.status == OrderStatus.PENDING.value, Order.expire_at > now)
                .order_by(Order.created_at, Order.id)
            )
            return list(session.execute(stmt).scalars().all())

    async def get_orders_by_address(self, address: str) -> List[Order]:
        return await asyncio.to_thread(self._get_orders_by_address, address)

    def _get_orders_by_address(self, address: str) -> List[Order]:
        with managed_session(self.session_factory) as session:
            stmt = select(Order).where(Order.pay_address == address).order_by(Order.created_at.desc())
            return list(session.execute(stmt).scalars().all())

    async def get_used_tx_hashes(self, tx_hashes) -> Set[str]:
        """Subset of `tx_hashes` that already settled an order"""
        tx_hashes = list(set(tx_hashes))
        if not tx_hashes:
            return set()
        return await asyncio.to_thread(self._get_used_tx_hashes, tx_hashes)

    def _get_used_tx_hashes(self, tx_hashes: List[str]) -> Set[str]:
        with managed_session(self.session_factory) as session:
            stmt = select(PaymentTransaction.tx_hash).where(PaymentTransaction.tx_hash.in_(tx_hashes))
            return set(session.execute(stmt).scalars().all())

    # ------------------------------------------------------------------
    # Payment method selection
    # ------------------------------------------------------------------

    async def select_method(
        self,
        order_id: str,
        chain: str,
        pay_currency: str,
        address: str,
        method: str = None,
    ) -> Order:
        """
        Attach settlement details to a pending order.

        pay_amount = amount / rate(currency, pay_currency), rounded to 8 places.
        A method can be selected once; a second attempt raises OrderNotPendingError.
        """
        order = await self.get_order(order_id)
        self._ensure_selectable(order)

        if not address or not address.strip():
            raise InvalidAddressError("Settlement address is required")
        address = address.strip()
        if not chain or not chain.strip():
            raise InvalidInputError("Payment chain is required")
        if not pay_currency or not pay_currency.strip():
            raise InvalidInputError("Payment currency is required")
        chain = chain.strip().upper()
        pay_currency = pay_currency.strip().upper()

        source = self.source_lookup(chain) if self.source_lookup else None
        if source is not None and not source.validate_address(address):
            raise InvalidAddressError(f"Invalid {chain} address: {address}")

        if self.rate_aggregator is not None:
            rate = await self.rate_aggregator.get_rate(order.currency, pay_currency)
        else:
            rate = Config.RATE_FALLBACK_VALUE
        if rate is None or rate <= 0:
            raise InvalidInputError(f"Unusable rate {rate} for {order.currency}->{pay_currency}")

        pay_amount = quantize_amount(Decimal(order.amount) / Decimal(rate))
        if pay_amount <= 0:
            raise InvalidAmountError(f"Settlement amount rounds to {pay_amount}")

        return await asyncio.to_thread(
            self._apply_method, order_id, chain, pay_currency, address, method or chain.lower(), pay_amount
        )

    def _ensure_selectable(self, order: Order) -> None:
        if Decimal(order.amount) <= 0:
            raise InvalidAmountError(f"Order {order.id} has non-positive amount {order.amount}")
        if order.status != OrderStatus.PENDING.value:
            OrderStateValidator.validate_transition(order.id, order.status, OrderStatus.PAID)
        if order.expire_at <= get_naive_utc_now():
            raise OrderExpiredError(f"Order {order.id} expired", details={"order_id": order.id})
        if order.has_payment_method:
            raise OrderNotPendingError(
                f"Order {order.id} already has a payment method",
                details={"order_id": order.id, "pay_chain": order.pay_chain},
            )

    def _apply_method(
        self, order_id: str, chain: str, pay_currency: str, address: str, method: str, pay_amount: Decimal
    ) -> Order:
        now = get_naive_utc_now()
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.status == OrderStatus.PENDING.value,
                    Order.pay_address.is_(None),
                )
                .values(
                    pay_amount=pay_amount,
                    pay_currency=pay_currency,
                    pay_chain=chain,
                    pay_address=address,
                    pay_method=method,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                raise OrderNotPendingError(
                    f"Order {order_id} changed while selecting a payment method",
                    details={"order_id": order_id},
                )
            order = session.get(Order, order_id)
            session.refresh(order)

        logger.info(f"💳 ORDER_METHOD_SELECTED: {order_id} {pay_amount} {pay_currency} on {chain} -> {address}")
        return order

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def confirm_order(self, order_id: str, tx_hash: str, transfer=None) -> bool:
        """
        pending -> paid.

        Returns True when this call performed the transition. A second
        confirmation of a paid order is a no-op returning False and keeps the
        original hash and paid_at. Expired or failed orders raise.
        """
        return await asyncio.to_thread(self._confirm_order, order_id, tx_hash, transfer)

    def _confirm_order(self, order_id: str, tx_hash: str, transfer) -> bool:
        now = get_naive_utc_now()
        with managed_session(self.session_factory) as session:
            order = session.get(Order, order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found", details={"order_id": order_id})

            if order.status == OrderStatus.PAID.value:
                logger.info(f"ℹ️ ORDER_ALREADY_PAID: {order_id} (kept {order.tx_hash}, ignored {tx_hash})")
                return False
            OrderStateValidator.validate_transition(order_id, order.status, OrderStatus.PAID)
            if order.expire_at <= now:
                raise OrderExpiredError(f"Order {order_id} expired", details={"order_id": order_id})

            used = session.execute(
                select(PaymentTransaction.order_id).where(PaymentTransaction.tx_hash == tx_hash)
            ).scalar_one_or_none()
            if used is not None:
                logger.warning(f"⚠️ TX_ALREADY_USED: {tx_hash} already settled order {used}, not confirming {order_id}")
                return False

            result = session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.status == OrderStatus.PENDING.value,
                    Order.expire_at > now,
                )
                .values(status=OrderStatus.PAID.value, tx_hash=tx_hash, paid_at=now, updated_at=now)
            )
            if result.rowcount == 0:
                # Lost a race: report what the winner left behind
                session.refresh(order)
                if order.status == OrderStatus.PAID.value:
                    return False
                OrderStateValidator.validate_transition(order_id, order.status, OrderStatus.PAID)
                raise OrderExpiredError(f"Order {order_id} expired", details={"order_id": order_id})

            if transfer is not None:
                record = PaymentTransaction(
                    order_id=order_id,
                    chain=order.pay_chain,
                    tx_hash=tx_hash,
                    from_address=transfer.from_address,
                    to_address=transfer.to_address,
                    amount=transfer.amount,
                    currency=transfer.currency,
                    block_number=transfer.block_number,
                    confirmed=transfer.status == "confirmed",
                    created_at=now,
                )
            else:
                # Manual confirmation: record the expected settlement
                record = PaymentTransaction(
                    order_id=order_id,
                    chain=order.pay_chain,
                    tx_hash=tx_hash,
                    to_address=order.pay_address,
                    amount=order.pay_amount if order.pay_amount is not None else order.amount,
                    currency=order.pay_currency or order.currency,
                    confirmed=True,
                    created_at=now,
                )
            session.add(record)

        logger.info(f"✅ ORDER_PAID: {order_id} tx={tx_hash}")
        return True

    async def manual_confirm(self, order_id: str, tx_hash: str, operator: str) -> bool:
        """Administrative confirmation that bypasses the matcher"""
        logger.warning(f"🛠️ ORDER_MANUAL_CONFIRM: {order_id} tx={tx_hash} by operator={operator}")
        confirmed = await self.confirm_order(order_id, tx_hash)
        if confirmed and self.notification_service is not None:
            order = await self.get_order(order_id)
            await self.notification_service.notify_payment(order)
        return confirmed

    async def fail_order(self, order_id: str, reason: str) -> Order:
        """Administrative rejection: pending -> failed"""
        return await asyncio.to_thread(self._fail_order, order_id, reason)

    def _fail_order(self, order_id: str, reason: str) -> Order:
        now = get_naive_utc_now()
        with managed_session(self.session_factory) as session:
            order = session.get(Order, order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
            OrderStateValidator.validate_transition(order_id, order.status, OrderStatus.FAILED)

            result = session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
                .values(status=OrderStatus.FAILED.value, updated_at=now)
            )
            session.refresh(order)
            if result.rowcount == 0:
                OrderStateValidator.validate_transition(order_id, order.status, OrderStatus.FAILED)

        logger.warning(f"🚫 ORDER_FAILED: {order_id} reason={reason}")
        return order

    async def sweep_expired(self) -> int:
        """Mark every pending order past its expiry as expired; returns the count"""
        return await asyncio.to_thread(self._sweep_expired)

    def _sweep_expired(self) -> int:
        now = get_naive_utc_now()
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(Order)
                .where(Order.status == OrderStatus.PENDING.value, Order.expire_at <= now)
                .values(status=OrderStatus.EXPIRED.value, updated_at=now)
            )
            count = result.rowcount or 0

        if count:
            logger.info(f"⏰ ORDERS_EXPIRED: {count} pending orders expired")
        return count
