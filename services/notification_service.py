"""
Notification Delivery
Database-backed queue for payment notifications with linear backoff retry

Kinds:
- admin_alert: Telegram message to an admin or a notify group
- callback:    merchant callback POST carrying the site API key (X-Api-Key)
- webhook:     plain merchant notify POST

Enqueueing never delivers inline; process_due() is driven by the scheduler.
A failed attempt is retried after 300s * retry_count; after the fifth failed
attempt the notification is dead and waits for manual intervention.
"""

import asyncio
import html
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import aiohttp
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker
from telegram import Bot
from telegram.error import TelegramError

from config import Config
from database import SessionLocal, managed_session
from models import (
    Admin,
    Notification,
    NotificationKind,
    NotificationStatus,
    Order,
    Site,
    SystemConfig,
)
from utils.datetime_helpers import get_naive_utc_now, to_unix
from utils.exceptions import DeliveryFailedError, InvalidInputError, NotFoundError

logger = logging.getLogger(__name__)

NOTIFY_GROUPS_CONFIG_KEY = "notify_groups"


class NotificationService:
    """Queue, deliver and retry payment notifications"""

    def __init__(
        self,
        session_factory: sessionmaker = None,
        bot: Optional[Bot] = None,
        max_retries: int = None,
        base_delay: int = None,
        timeout: int = None,
        clock: Callable[[], datetime] = get_naive_utc_now,
    ):
        self.session_factory = session_factory or SessionLocal
        self._bot = bot
        self.max_retries = max_retries if max_retries is not None else Config.NOTIFICATION_MAX_RETRIES
        self.base_delay = base_delay if base_delay is not None else Config.NOTIFICATION_RETRY_BASE_DELAY
        self.timeout = timeout or Config.EXTERNAL_API_TIMEOUT
        self.clock = clock

    @property
    def bot(self) -> Optional[Bot]:
        if self._bot is None and Config.BOT_TOKEN:
            self._bot = Bot(Config.BOT_TOKEN)
        return self._bot

    def next_retry_delay(self, retry_count: int) -> timedelta:
        """Linear backoff: base_delay * retry_count"""
        return timedelta(seconds=self.base_delay * retry_count)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(self, order_id: str, kind: str, target: str, payload: Any) -> Notification:
        """Persist a pending notification due immediately"""
        notifications = await asyncio.to_thread(self._enqueue_many, [(order_id, kind, target, payload)])
        return notifications[0]

    def _enqueue_many(self, items: List[tuple]) -> List[Notification]:
        now = self.clock()
        valid_kinds = {k.value for k in NotificationKind}
        notifications = []
        with managed_session(self.session_factory) as session:
            for order_id, kind, target, payload in items:
                kind = kind.value if isinstance(kind, NotificationKind) else kind
                if kind not in valid_kinds:
                    raise InvalidInputError(f"Unknown notification kind '{kind}'")
                notification = Notification(
                    order_id=order_id,
                    kind=kind,
                    target=str(target),
                    content=json.dumps(payload, default=str),
                    status=NotificationStatus.PENDING.value,
                    retry_count=0,
                    next_retry_at=now,
                    created_at=now,
                )
                session.add(notification)
                notifications.append(notification)
            session.flush()

        for n in notifications:
            logger.info(f"📨 NOTIFICATION_QUEUED: #{n.id} {n.kind} for order {n.order_id} -> {n.target}")
        return notifications

    async def notify_payment(self, order: Order) -> List[Notification]:
        """Queue admin alerts plus the merchant callback and webhook for a paid order"""
        return await asyncio.to_thread(self._queue_payment_notifications, order)

    def _admin_targets(self, session) -> List[str]:
        targets = [str(a) for a in session.execute(select(Admin.telegram_id)).scalars().all()]
        targets.extend(str(a) for a in Config.ADMIN_IDS)

        row = session.get(SystemConfig, NOTIFY_GROUPS_CONFIG_KEY)
        if row is not None and row.value:
            try:
                groups = json.loads(row.value)
                targets.extend(str(g) for g in groups if g not in (None, ""))
            except (ValueError, TypeError) as e:
                logger.warning(f"⚠️ NOTIFY_GROUPS: Invalid system_config value: {e}")

        # Preserve order, drop duplicates
        return list(dict.fromkeys(targets))

    def _queue_payment_notifications(self, order: Order) -> List[Notification]:
        now = self.clock()
        items = []

        with managed_session(self.session_factory) as session:
            admin_targets = self._admin_targets(session)
            site = session.get(Site, order.site_id) if order.site_id else None

        alert = {"text": format_admin_alert(order)}
        for chat_id in admin_targets:
            items.append((order.id, NotificationKind.ADMIN_ALERT, chat_id, alert))

        if site is not None and site.enabled:
            if site.callback_url:
                items.append((order.id, NotificationKind.CALLBACK, site.callback_url, build_callback_payload(order, now)))
            if site.notify_url:
                items.append((order.id, NotificationKind.WEBHOOK, site.notify_url, {
                    "order_id": order.id,
                    "status": order.status,
                    "tx_hash": order.tx_hash,
                }))

        if not items:
            logger.info(f"ℹ️ NOTIFY_PAYMENT: No recipients configured for order {order.id}")
            return []
        return self._enqueue_many(items)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_due(self, batch_size: int = None) -> Dict[str, int]:
        """Deliver pending notifications whose next_retry_at has passed"""
        batch_size = batch_size or Config.NOTIFICATION_BATCH_SIZE
        stats = {"processed": 0, "sent": 0, "failed": 0, "dead": 0}

        due = await asyncio.to_thread(self._load_due, batch_size)
        if not due:
            return stats

        logger.info(f"🔄 Processing {len(due)} due notifications...")
        for notification, api_key in due:
            stats["processed"] += 1
            try:
                await self._deliver(notification, api_key)
            except DeliveryFailedError as e:
                became_dead = await asyncio.to_thread(self._record_failure, notification.id, e.message)
                stats["dead" if became_dead else "failed"] += 1
                continue
            except Exception as e:
                logger.error(f"❌ Unexpected delivery error for notification #{notification.id}: {e}", exc_info=True)
                became_dead = await asyncio.to_thread(self._record_failure, notification.id, str(e))
                stats["dead" if became_dead else "failed"] += 1
                continue

            await asyncio.to_thread(self._record_success, notification.id)
            stats["sent"] += 1

        logger.info(
            f"✅ Notification batch complete: {stats['processed']} processed, {stats['sent']} sent, "
            f"{stats['failed']} failed, {stats['dead']} dead"
        )
        return stats

    def _load_due(self, batch_size: int) -> List[tuple]:
        now = self.clock()
        with managed_session(self.session_factory) as session:
            stmt = (
                select(Notification, Site.api_key)
                .join(Order, Order.id == Notification.order_id)
                .outerjoin(Site, Site.id == Order.site_id)
                .where(
                    Notification.status == NotificationStatus.PENDING.value,
                    Notification.next_retry_at <= now,
                )
                .order_by(Notification.next_retry_at, Notification.id)
                .limit(batch_size)
            )
            return [(row[0], row[1]) for row in session.execute(stmt).all()]

    def _record_success(self, notification_id: int) -> None:
        with managed_session(self.session_factory) as session:
            notification = session.get(Notification, notification_id)
            notification.status = NotificationStatus.SENT.value
            notification.sent_at = self.clock()
            notification.last_error = None
        logger.info(f"✅ NOTIFICATION_SENT: #{notification_id}")

    def _record_failure(self, notification_id: int, error: str) -> bool:
        """Apply backoff; returns True when the notification became dead"""
        now = self.clock()
        with managed_session(self.session_factory) as session:
            notification = session.get(Notification, notification_id)
            notification.retry_count += 1
            notification.last_error = (error or "")[:500]

            if notification.retry_count >= self.max_retries:
                notification.status = NotificationStatus.DEAD.value
                notification.next_retry_at = None
                logger.error(
                    f"💀 NOTIFICATION_DEAD: #{notification_id} {notification.kind} -> {notification.target} "
                    f"after {notification.retry_count} attempts: {error}"
                )
                return True

            notification.next_retry_at = now + self.next_retry_delay(notification.retry_count)
            logger.warning(
                f"⚠️ NOTIFICATION_RETRY: #{notification_id} attempt {notification.retry_count}/{self.max_retries} "
                f"failed ({error}), next at {notification.next_retry_at}"
            )
            return False

    async def _deliver(self, notification: Notification, api_key: Optional[str]) -> None:
        payload = json.loads(notification.content)

        if notification.kind == NotificationKind.CALLBACK.value:
            headers = {Config.CALLBACK_API_KEY_HEADER: api_key or ""}
            await self._post_json(notification.target, payload, headers)
        elif notification.kind == NotificationKind.WEBHOOK.value:
            await self._post_json(notification.target, payload)
        elif notification.kind == NotificationKind.ADMIN_ALERT.value:
            await self._send_telegram(notification.target, payload.get("text", ""))
        else:
            raise DeliveryFailedError(f"Unknown notification kind '{notification.kind}'")

    async def _post_json(self, url: str, payload: Any, headers: Dict[str, str] = None) -> None:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(url, json=payload, headers=headers, timeout=timeout) as response:
                    if not 200 <= response.status < 300:
                        body = await response.text()
                        raise DeliveryFailedError(f"HTTP {response.status} from {url}: {body[:200]}")
        except asyncio.TimeoutError as e:
            raise DeliveryFailedError(f"Timeout after {self.timeout}s posting to {url}") from e
        except aiohttp.ClientError as e:
            raise DeliveryFailedError(f"Transport error posting to {url}: {e}") from e

    async def _send_telegram(self, chat_id: str, text: str) -> None:
        bot = self.bot
        if bot is None:
            raise DeliveryFailedError("BOT_TOKEN not configured")
        try:
            await bot.send_message(chat_id=int(chat_id), text=text, parse_mode="HTML")
        except (TelegramError, ValueError) as e:
            raise DeliveryFailedError(f"Telegram send to {chat_id} failed: {e}") from e

    # ------------------------------------------------------------------
    # Manual intervention
    # ------------------------------------------------------------------

    async def retry_dead(self, notification_id: int) -> Notification:
        """Reset a dead notification so the next batch retries it from scratch"""
        return await asyncio.to_thread(self._retry_dead, notification_id)

    def _retry_dead(self, notification_id: int) -> Notification:
        with managed_session(self.session_factory) as session:
            notification = session.get(Notification, notification_id)
            if notification is None:
                raise NotFoundError(f"Notification {notification_id} not found")
            if notification.status != NotificationStatus.DEAD.value:
                raise InvalidInputError(
                    f"Notification {notification_id} is {notification.status}, only dead notifications can be retried"
                )
            notification.status = NotificationStatus.PENDING.value
            notification.retry_count = 0
            notification.next_retry_at = self.clock()
            notification.last_error = None

        logger.info(f"🔁 NOTIFICATION_REQUEUED: #{notification_id}")
        return notification

    def get_queue_stats(self) -> Dict[str, int]:
        """Notification counts per status"""
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(Notification.status, func.count(Notification.id)).group_by(Notification.status)
            ).all()
        stats = {s.value: 0 for s in NotificationStatus}
        stats.update({status: count for status, count in rows})
        stats["total"] = sum(count for _, count in rows)
        return stats


def build_callback_payload(order: Order, now: datetime) -> Dict[str, Any]:
    return {
        "order_id": order.id,
        "status": order.status,
        "amount": str(order.amount),
        "currency": order.currency,
        "settlement_amount": str(order.pay_amount) if order.pay_amount is not None else None,
        "settlement_currency": order.pay_currency,
        "tx_hash": order.tx_hash,
        "paid_at": to_unix(order.paid_at),
        "timestamp": to_unix(now),
    }


def format_admin_alert(order: Order) -> str:
    def esc(value) -> str:
        return html.escape(str(value if value is not None else "-"))

    settlement = f"{esc(order.pay_amount)} {esc(order.pay_currency)}" if order.pay_amount is not None else "-"
    return (
        "💰 <b>Payment received</b>\n"
        f"Order: <code>{esc(order.id)}</code>\n"
        f"Amount: {esc(order.amount)} {esc(order.currency)}\n"
        f"Paid: {settlement} on {esc(order.pay_chain)}\n"
        f"Tx: <code>{esc(order.tx_hash)}</code>"
    )
