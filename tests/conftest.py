"""
Shared fixtures for the reconciliation engine test suite

- file-backed SQLite per test (worker threads from asyncio.to_thread share it)
- fake transfer / rate sources implementing the real contracts
- helpers to insert orders in a given state
"""

import asyncio
import logging
import time
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from database import build_engine
from models import Base, Order, OrderStatus, Site
from services.rate_service import RateSource
from services.sources.base import Transfer, TransferSource
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import RateUnavailableError, SourceUnavailableError, TransferNotFoundError
from utils.helpers import generate_order_id

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

TRON_ADDRESS = "TXYZopYRdj2D9XRtbG411XZZ3kM5VkAeBf"
TRON_ADDRESS_2 = "TJRabPrwbZy45sbavfcjinPJC18kjpRTv8"


class FakeTransferSource(TransferSource):
    """In-memory source; records every get_transfers call"""

    def __init__(self, chain: str = "TRON", transfers: Optional[List[Transfer]] = None, error: Exception = None):
        super().__init__(chain=chain, service_name=f"fake:{chain.lower()}")
        self.transfers = list(transfers or [])
        self.error = error
        self.delay = 0
        self.calls = []

    async def get_transfers(self, address: str, since: int) -> List[Transfer]:
        self.calls.append((address, since))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.filter_transfers(self.transfers, address, since)

    async def get_transfer(self, tx_hash: str) -> Transfer:
        for transfer in self.transfers:
            if transfer.hash == tx_hash:
                return transfer
        raise TransferNotFoundError(tx_hash)

    def validate_address(self, address: str) -> bool:
        return len(address) == 34 and address.startswith("T")


class StaticRateSource(RateSource):
    """Returns a fixed price and counts calls"""

    def __init__(self, value, name: str = "static"):
        super().__init__(timeout=1)
        self.value = Decimal(str(value))
        self.name = name
        self.calls = 0

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        self.calls += 1
        return self.value


class FailingRateSource(RateSource):
    name = "failing"

    def __init__(self):
        super().__init__(timeout=1)
        self.calls = 0

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        self.calls += 1
        raise RateUnavailableError("source down")


def make_transfer(tx_hash: str, amount, to_address: str = TRON_ADDRESS, currency: str = "USDT", timestamp: int = None):
    return Transfer(
        hash=tx_hash,
        from_address="TSenderAddress000000000000000000000",
        to_address=to_address,
        amount=Decimal(str(amount)),
        currency=currency,
        timestamp=int(time.time()) if timestamp is None else timestamp,
    )


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'engine_test.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def make_order(session_factory):
    """Insert an order directly, bypassing the ledger"""

    def _make_order(
        amount="100",
        currency="CNY",
        pay_amount=None,
        pay_currency="USDT",
        pay_chain="TRON",
        pay_address=TRON_ADDRESS,
        status=OrderStatus.PENDING.value,
        expires_in: int = 1800,
        site_id: str = None,
        created_offset: int = 0,
    ) -> Order:
        now = get_naive_utc_now()
        created = now - timedelta(seconds=created_offset)
        order = Order(
            id=generate_order_id(),
            amount=Decimal(str(amount)),
            currency=currency,
            status=status,
            site_id=site_id,
            expire_at=now + timedelta(seconds=expires_in),
            created_at=created,
            updated_at=created,
        )
        if pay_amount is not None:
            order.pay_amount = Decimal(str(pay_amount))
            order.pay_currency = pay_currency
            order.pay_chain = pay_chain
            order.pay_address = pay_address
            order.pay_method = pay_chain.lower()
        session = session_factory()
        try:
            session.add(order)
            session.commit()
        finally:
            session.close()
        return order

    return _make_order


@pytest.fixture
def make_site(session_factory):
    def _make_site(site_id="shop1", api_key="secret-key", callback_url="https://shop.example/callback",
                   notify_url="https://shop.example/notify", name="Test Shop"):
        site = Site(id=site_id, name=name, api_key=api_key, callback_url=callback_url, notify_url=notify_url)
        session = session_factory()
        try:
            session.add(site)
            session.commit()
        finally:
            session.close()
        return site

    return _make_site


@pytest.fixture
def fake_source():
    return FakeTransferSource()


@pytest.fixture
def unavailable_source():
    return FakeTransferSource(chain="ETH", error=SourceUnavailableError("explorer down"))
