"""
Tests for notification queueing, delivery, backoff and dead-lettering
"""

import json
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from telegram.error import TelegramError

from models import Admin, Notification, NotificationStatus, OrderStatus, SystemConfig
from services.notification_service import NotificationService, format_admin_alert
from utils.exceptions import DeliveryFailedError, InvalidInputError


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bot():
    mock_bot = AsyncMock()
    mock_bot.send_message = AsyncMock()
    return mock_bot


@pytest.fixture
def service(session_factory, bot, clock):
    return NotificationService(session_factory=session_factory, bot=bot, max_retries=5, base_delay=300, clock=clock)


def load(session_factory, notification_id):
    session = session_factory()
    try:
        return session.get(Notification, notification_id)
    finally:
        session.close()


def paid_order(make_order, **kwargs):
    order = make_order(pay_amount="13.88888889", status=OrderStatus.PAID.value, **kwargs)
    order.tx_hash = "tx-paid"
    order.paid_at = datetime(2026, 1, 1, 11, 59, 0)
    return order


class TestEnqueue:

    @pytest.mark.asyncio
    async def test_enqueue_is_pending_and_due_now(self, service, make_order, clock, bot):
        order = make_order()
        notification = await service.enqueue(order.id, "webhook", "https://x.example/hook", {"a": 1})

        assert notification.status == NotificationStatus.PENDING.value
        assert notification.retry_count == 0
        assert notification.next_retry_at == clock.now
        assert json.loads(notification.content) == {"a": 1}
        bot.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_kind_rejected(self, service, make_order):
        order = make_order()
        with pytest.raises(InvalidInputError):
            await service.enqueue(order.id, "carrier_pigeon", "x", {})

    @pytest.mark.asyncio
    async def test_notify_payment_fans_out(self, service, make_order, make_site, session_factory):
        make_site()
        session = session_factory()
        session.add(Admin(telegram_id=111, username="ops"))
        session.add(SystemConfig(key="notify_groups", value=json.dumps([-100200, 111])))
        session.commit()
        session.close()

        order = paid_order(make_order, site_id="shop1")
        with patch("services.notification_service.Config.ADMIN_IDS", [222]):
            notifications = await service.notify_payment(order)

        kinds = sorted((n.kind, n.target) for n in notifications)
        assert kinds == [
            ("admin_alert", "-100200"),
            ("admin_alert", "111"),
            ("admin_alert", "222"),
            ("callback", "https://shop.example/callback"),
            ("webhook", "https://shop.example/notify"),
        ]

        callback = next(n for n in notifications if n.kind == "callback")
        payload = json.loads(callback.content)
        assert payload["order_id"] == order.id
        assert payload["status"] == "paid"
        assert payload["amount"] == "100"
        assert payload["settlement_amount"] == "13.88888889"
        assert payload["currency"] == "CNY"
        assert payload["settlement_currency"] == "USDT"
        assert payload["tx_hash"] == "tx-paid"
        assert isinstance(payload["paid_at"], int)
        assert "timestamp" in payload


class TestProcessDue:

    @pytest.mark.asyncio
    async def test_successful_callback_marks_sent_with_api_key(self, service, make_order, make_site, clock, session_factory):
        make_site(api_key="k-123")
        order = make_order(site_id="shop1")
        queued = await service.enqueue(order.id, "callback", "https://shop.example/callback", {"order_id": order.id})

        with patch.object(service, "_post_json", AsyncMock()) as post:
            stats = await service.process_due()

        assert stats == {"processed": 1, "sent": 1, "failed": 0, "dead": 0}
        url, payload, headers = post.await_args.args
        assert url == "https://shop.example/callback"
        assert payload == {"order_id": order.id}
        assert headers == {"X-Api-Key": "k-123"}

        stored = load(session_factory, queued.id)
        assert stored.status == NotificationStatus.SENT.value
        assert stored.sent_at == clock.now

    @pytest.mark.asyncio
    async def test_admin_alert_goes_through_bot(self, service, make_order, bot):
        order = make_order()
        await service.enqueue(order.id, "admin_alert", "12345", {"text": "<b>paid</b>"})

        stats = await service.process_due()

        assert stats["sent"] == 1
        bot.send_message.assert_awaited_once_with(chat_id=12345, text="<b>paid</b>", parse_mode="HTML")

    @pytest.mark.asyncio
    async def test_linear_backoff_then_dead(self, service, make_order, clock, session_factory):
        order = make_order()
        queued = await service.enqueue(order.id, "webhook", "https://down.example", {})
        failing = AsyncMock(side_effect=DeliveryFailedError("HTTP 500"))

        with patch.object(service, "_post_json", failing):
            for attempt in range(1, 5):
                stats = await service.process_due()
                assert stats["failed"] == 1

                stored = load(session_factory, queued.id)
                assert stored.retry_count == attempt
                assert stored.status == NotificationStatus.PENDING.value
                assert stored.next_retry_at == clock.now + timedelta(seconds=300 * attempt)

                # Not due yet: nothing processed
                clock.advance(300 * attempt - 1)
                assert (await service.process_due())["processed"] == 0
                clock.advance(1)

            stats = await service.process_due()

        assert stats["dead"] == 1
        stored = load(session_factory, queued.id)
        assert stored.status == NotificationStatus.DEAD.value
        assert stored.retry_count == 5
        assert "HTTP 500" in stored.last_error
        assert failing.await_count == 5

        clock.advance(100000)
        assert (await service.process_due())["processed"] == 0

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(self, service, make_order, bot):
        order = make_order()
        await service.enqueue(order.id, "admin_alert", "1", {"text": "a"})
        await service.enqueue(order.id, "admin_alert", "2", {"text": "b"})
        bot.send_message.side_effect = [TelegramError("chat not found"), None]

        stats = await service.process_due()

        assert stats == {"processed": 2, "sent": 1, "failed": 1, "dead": 0}

    @pytest.mark.asyncio
    async def test_missing_bot_token_is_a_delivery_failure(self, session_factory, make_order, clock):
        service = NotificationService(session_factory=session_factory, bot=None, clock=clock)
        order = make_order()
        await service.enqueue(order.id, "admin_alert", "1", {"text": "a"})

        with patch("services.notification_service.Config.BOT_TOKEN", None):
            stats = await service.process_due()

        assert stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_batch_size_limits_work(self, service, make_order):
        order = make_order()
        for i in range(3):
            await service.enqueue(order.id, "webhook", f"https://x.example/{i}", {})

        with patch.object(service, "_post_json", AsyncMock()):
            assert (await service.process_due(batch_size=2))["processed"] == 2
            assert (await service.process_due(batch_size=2))["processed"] == 1


class TestManualIntervention:

    @pytest.mark.asyncio
    async def test_retry_dead_resets_notification(self, service, make_order, session_factory, clock):
        order = make_order()
        queued = await service.enqueue(order.id, "webhook", "https://down.example", {})
        session = session_factory()
        stored = session.get(Notification, queued.id)
        stored.status = NotificationStatus.DEAD.value
        stored.retry_count = 5
        session.commit()
        session.close()

        requeued = await service.retry_dead(queued.id)

        assert requeued.status == NotificationStatus.PENDING.value
        assert requeued.retry_count == 0
        assert requeued.next_retry_at == clock.now
        assert service.get_queue_stats()["pending"] == 1

    @pytest.mark.asyncio
    async def test_retry_dead_rejects_live_notification(self, service, make_order):
        order = make_order()
        queued = await service.enqueue(order.id, "webhook", "https://x.example", {})
        with pytest.raises(InvalidInputError):
            await service.retry_dead(queued.id)


class TestFormatAdminAlert:

    def test_fields_are_html_escaped(self):
        order = SimpleNamespace(
            id="PAY1", amount=Decimal("100"), currency="<b>CNY",
            pay_amount=Decimal("13.88888889"), pay_currency="USDT&", pay_chain="TRON<x>",
            tx_hash="<script>",
        )

        text = format_admin_alert(order)

        assert "&lt;b&gt;CNY" in text
        assert "USDT&amp;" in text
        assert "TRON&lt;x&gt;" in text
        assert "<code>&lt;script&gt;</code>" in text
        assert "<script>" not in text

    def test_unset_settlement_rendered_as_dash(self):
        order = SimpleNamespace(
            id="PAY1", amount=Decimal("100"), currency="CNY",
            pay_amount=None, pay_currency=None, pay_chain=None, tx_hash=None,
        )

        text = format_admin_alert(order)

        assert "Paid: - on -" in text
        assert "Tx: <code>-</code>" in text
