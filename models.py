"""
HashPay Reconciliation Engine - Database Schema
==============================================

Schema for the payment reconciliation core:
- Orders denominated in a merchant currency and settled in crypto
- Matched on-chain / exchange transfers kept for audit
- Queued notifications (admin alerts, merchant callbacks and webhooks)
- Merchant sites and read-only source registration config

Orders are never deleted; they are retained for audit and statistics.
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, Index, CheckConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class OrderStatus(Enum):
    """Order lifecycle states"""
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"


class NotificationKind(Enum):
    """Delivery channel of a queued notification"""
    ADMIN_ALERT = "admin_alert"   # Telegram message to an admin or notify group
    CALLBACK = "callback"         # Signed merchant callback (X-Api-Key)
    WEBHOOK = "webhook"           # Plain merchant notify URL


class NotificationStatus(Enum):
    """Delivery status of a queued notification"""
    PENDING = "pending"
    SENT = "sent"
    DEAD = "dead"


# ============================================================================
# MODELS
# ============================================================================

class Site(Base):
    """Merchant site registered to receive callbacks"""
    __tablename__ = "sites"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    api_key = Column(String(128), nullable=False)
    callback_url = Column(String(512), nullable=True)
    notify_url = Column(String(512), nullable=True)
    enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    orders = relationship("Order", back_populates="site")

    def __repr__(self):
        return f"<Site(id={self.id}, name={self.name})>"


class Order(Base):
    """A request to receive funds, settled against observed transfers"""
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True)

    # Merchant-facing denomination
    amount = Column(Numeric(28, 8), nullable=False)
    currency = Column(String(10), nullable=False)

    # Settlement details, set together once a payment method is chosen
    pay_amount = Column(Numeric(28, 8), nullable=True)
    pay_currency = Column(String(20), nullable=True)
    pay_chain = Column(String(20), nullable=True, index=True)
    pay_address = Column(String(128), nullable=True, index=True)
    pay_method = Column(String(20), nullable=True)

    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False, index=True)
    site_id = Column(String(64), ForeignKey("sites.id"), nullable=True, index=True)
    tx_hash = Column(String(128), nullable=True)

    expire_at = Column(DateTime, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    site = relationship("Site", back_populates="orders")
    transactions = relationship("PaymentTransaction", back_populates="order")

    __table_args__ = (
        CheckConstraint(
            "(pay_amount IS NULL AND pay_currency IS NULL AND pay_address IS NULL) OR "
            "(pay_amount IS NOT NULL AND pay_currency IS NOT NULL AND pay_address IS NOT NULL)",
            name="ck_orders_settlement_all_or_none",
        ),
        Index("ix_orders_status_expire", "status", "expire_at"),
        Index("ix_orders_chain_address", "pay_chain", "pay_address"),
    )

    @property
    def has_payment_method(self) -> bool:
        return self.pay_address is not None

    def __repr__(self):
        return f"<Order(id={self.id}, status={self.status}, amount={self.amount} {self.currency})>"


class PaymentTransaction(Base):
    """External transfer that confirmed an order"""
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("orders.id"), nullable=False, index=True)
    chain = Column(String(20), nullable=True)
    tx_hash = Column(String(128), nullable=False, unique=True)
    from_address = Column(String(128), nullable=True)
    to_address = Column(String(128), nullable=True)
    amount = Column(Numeric(28, 8), nullable=False)
    currency = Column(String(20), nullable=False)
    block_number = Column(BigInteger, nullable=True)
    confirmed = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, nullable=False)

    order = relationship("Order", back_populates="transactions")

    def __repr__(self):
        return f"<PaymentTransaction(order={self.order_id}, tx={self.tx_hash})>"


class Notification(Base):
    """Queued delivery attempt (admin alert, merchant callback or webhook)"""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("orders.id"), nullable=False, index=True)
    kind = Column(String(20), nullable=False)
    target = Column(String(512), nullable=False)
    content = Column(Text, nullable=False)

    status = Column(String(20), default=NotificationStatus.PENDING.value, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    next_retry_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False)
    sent_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_notifications_status_next_retry", "status", "next_retry_at"),
    )

    def __repr__(self):
        return (
            f"<Notification(id={self.id}, order={self.order_id}, kind={self.kind}, "
            f"status={self.status}, retries={self.retry_count})>"
        )


class SourceConfig(Base):
    """Read-only registration of one transfer source per chain"""
    __tablename__ = "source_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chain = Column(String(20), nullable=False, unique=True)
    source_type = Column(String(30), nullable=False)  # trongrid, etherscan, solana_rpc, toncenter, okx, binance
    endpoint = Column(String(512), nullable=True)
    api_key = Column(String(255), nullable=True)
    api_secret = Column(String(255), nullable=True)
    passphrase = Column(String(255), nullable=True)
    enabled = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<SourceConfig(chain={self.chain}, type={self.source_type})>"


class SystemConfig(Base):
    """Key/value engine settings (order timeout, notify groups)"""
    __tablename__ = "system_config"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Admin(Base):
    """Telegram accounts that receive internal payment alerts"""
    __tablename__ = "admins"

    id = Column(Integer, primary_key=True, autoincrement=True)
    telegram_id = Column(BigInteger, nullable=False, unique=True)
    username = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
