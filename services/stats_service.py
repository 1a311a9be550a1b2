"""Read-only order statistics for the admin dashboard"""

import asyncio
import csv
import io
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, func
from sqlalchemy.orm import sessionmaker

from database import SessionLocal, managed_session
from models import Order, OrderStatus, Site
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.exceptions import InvalidInputError

logger = logging.getLogger(__name__)

PAID = OrderStatus.PAID.value

REPORT_COLUMNS = [
    "order_id", "status", "amount", "currency", "pay_amount", "pay_currency",
    "pay_chain", "tx_hash", "created_at", "paid_at",
]


def _dec(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _optional(value: Optional[Any]) -> str:
    return "" if value is None else str(value)


class StatsService:
    """Order volume, success rate and payment method statistics"""

    def __init__(self, session_factory: sessionmaker = None, clock=get_naive_utc_now):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock

    async def get_overview(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._get_overview)

    async def get_daily_stats(self, days: int = 7) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._get_daily_stats, days)

    async def get_payment_method_stats(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._get_payment_method_stats)

    async def get_top_merchants(self, limit: int = 10) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._get_top_merchants, limit)

    async def get_hourly_stats(self, hours: int = 24) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._get_hourly_stats, hours)

    async def export_report(self, start: datetime, end: datetime) -> str:
        """CSV of every order created in [start, end), oldest first"""
        start, end = ensure_naive_datetime(start), ensure_naive_datetime(end)
        if start is None or end is None or end <= start:
            raise InvalidInputError("Report range must have start before end")
        return await asyncio.to_thread(self._export_report, start, end)

    @staticmethod
    def _window(session, start: datetime = None) -> Dict[str, Any]:
        query = session.query(Order)
        if start is not None:
            query = query.filter(Order.created_at >= start)
        orders = query.count()
        paid_query = query.filter(Order.status == PAID)
        paid = paid_query.count()
        amount = paid_query.with_entities(func.sum(Order.amount)).scalar()
        return {"orders": orders, "paid": paid, "amount": _dec(amount)}

    def _get_overview(self) -> Dict[str, Any]:
        now = self.clock()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)

        with managed_session(self.session_factory) as session:
            windows = {
                "today": self._window(session, today),
                "week": self._window(session, now - timedelta(days=7)),
                "month": self._window(session, now - timedelta(days=30)),
                "total": self._window(session),
            }
            pending = (
                session.query(Order)
                .filter(Order.status == OrderStatus.PENDING.value, Order.expire_at > now)
                .count()
            )
            popular_payment = (
                session.query(Order.pay_method, func.count(Order.id))
                .filter(Order.pay_method.isnot(None))
                .group_by(Order.pay_method)
                .order_by(desc(func.count(Order.id)), Order.pay_method)
                .first()
            )
            popular_currency = (
                session.query(Order.pay_currency, func.count(Order.id))
                .filter(Order.pay_currency.isnot(None))
                .group_by(Order.pay_currency)
                .order_by(desc(func.count(Order.id)), Order.pay_currency)
                .first()
            )

        total = windows["total"]
        overview = {"pending_orders": pending}
        for name, window in windows.items():
            overview[f"{name}_orders"] = window["orders"]
            overview[f"{name}_success"] = window["paid"]
            overview[f"{name}_amount"] = window["amount"]
        overview.update({
            "success_rate": _rate(windows["today"]["paid"], windows["today"]["orders"]),
            "total_success_rate": _rate(total["paid"], total["orders"]),
            "average_amount": (total["amount"] / total["paid"]) if total["paid"] else Decimal("0"),
            "popular_payment": popular_payment[0] if popular_payment else None,
            "popular_currency": popular_currency[0] if popular_currency else None,
        })
        return overview

    def _get_daily_stats(self, days: int) -> List[Dict[str, Any]]:
        days = max(1, int(days))
        now = self.clock()
        first_day = (now - timedelta(days=days - 1)).replace(hour=0, minute=0, second=0, microsecond=0)

        with managed_session(self.session_factory) as session:
            rows = (
                session.query(Order.created_at, Order.status, Order.amount)
                .filter(Order.created_at >= first_day)
                .all()
            )

        buckets = {}
        for i in range(days):
            date = (first_day + timedelta(days=i)).date()
            buckets[date] = {"date": date.isoformat(), "order_count": 0, "success_count": 0, "amount": Decimal("0")}

        for created_at, status, amount in rows:
            bucket = buckets.get(created_at.date())
            if bucket is None:
                continue
            bucket["order_count"] += 1
            if status == PAID:
                bucket["success_count"] += 1
                bucket["amount"] += _dec(amount)

        result = list(buckets.values())
        for bucket in result:
            bucket["success_rate"] = _rate(bucket["success_count"], bucket["order_count"])
        return result

    def _get_payment_method_stats(self) -> List[Dict[str, Any]]:
        with managed_session(self.session_factory) as session:
            rows = (
                session.query(
                    Order.pay_method,
                    Order.pay_chain,
                    Order.pay_currency,
                    func.count(Order.id),
                    func.sum(Order.pay_amount),
                )
                .filter(Order.status == PAID, Order.pay_method.isnot(None))
                .group_by(Order.pay_method, Order.pay_chain, Order.pay_currency)
                .all()
            )

        total = sum(row[3] for row in rows)
        stats = [
            {
                "method": method,
                "chain": chain,
                "currency": currency,
                "order_count": count,
                "total_amount": _dec(amount),
                "percentage": _rate(count, total),
            }
            for method, chain, currency, count, amount in rows
        ]
        stats.sort(key=lambda s: (-s["order_count"], s["method"] or ""))
        return stats

    def _get_top_merchants(self, limit: int) -> List[Dict[str, Any]]:
        with managed_session(self.session_factory) as session:
            rows = (
                session.query(Site.id, Site.name, Order.status, Order.amount)
                .join(Order, Order.site_id == Site.id)
                .all()
            )

        merchants: Dict[str, Dict[str, Any]] = {}
        for site_id, name, status, amount in rows:
            entry = merchants.setdefault(site_id, {
                "site_id": site_id, "name": name, "order_count": 0, "success_count": 0, "total_amount": Decimal("0"),
            })
            entry["order_count"] += 1
            if status == PAID:
                entry["success_count"] += 1
                entry["total_amount"] += _dec(amount)

        ranked = sorted(merchants.values(), key=lambda m: (-m["total_amount"], -m["success_count"], m["site_id"]))
        for entry in ranked:
            entry["success_rate"] = _rate(entry["success_count"], entry["order_count"])
        return ranked[:max(0, int(limit))]

    def _get_hourly_stats(self, hours: int) -> List[Dict[str, Any]]:
        hours = max(1, int(hours))
        current_hour = self.clock().replace(minute=0, second=0, microsecond=0)
        first_hour = current_hour - timedelta(hours=hours - 1)

        with managed_session(self.session_factory) as session:
            rows = (
                session.query(Order.created_at, Order.status, Order.amount)
                .filter(Order.created_at >= first_hour)
                .all()
            )

        buckets = {}
        for i in range(hours):
            hour = first_hour + timedelta(hours=i)
            buckets[hour] = {"hour": hour.isoformat(), "order_count": 0, "success_count": 0, "amount": Decimal("0")}

        for created_at, status, amount in rows:
            bucket = buckets.get(created_at.replace(minute=0, second=0, microsecond=0))
            if bucket is None:
                continue
            bucket["order_count"] += 1
            if status == PAID:
                bucket["success_count"] += 1
                bucket["amount"] += _dec(amount)

        return list(buckets.values())

    def _export_report(self, start: datetime, end: datetime) -> str:
        with managed_session(self.session_factory) as session:
            orders = (
                session.query(Order)
                .filter(Order.created_at >= start, Order.created_at < end)
                .order_by(Order.created_at, Order.id)
                .all()
            )
            rows = [
                [
                    order.id,
                    order.status,
                    order.amount,
                    order.currency,
                    _optional(order.pay_amount),
                    _optional(order.pay_currency),
                    _optional(order.pay_chain),
                    _optional(order.tx_hash),
                    order.created_at.isoformat(),
                    order.paid_at.isoformat() if order.paid_at else "",
                ]
                for order in orders
            ]

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(REPORT_COLUMNS)
        writer.writerows(rows)
        logger.info(f"📊 STATS_EXPORT: {len(rows)} orders between {start.isoformat()} and {end.isoformat()}")
        return buffer.getvalue()
