"""
Reconciliation Scheduler
Periodically matches pending orders against transfers reported by chain / exchange sources

One cycle:
1. load pending, unexpired orders
2. group by (pay_chain, pay_address)
3. one get_transfers() call per group, bounded by a timeout
4. match transfers to orders within tolerance, confirm, queue notifications

Groups run concurrently; a failing group never aborts the others.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import Config
from services.payment_matcher import match_transfers
from services.sources.base import TransferSource
from utils.exceptions import HashPayError, SourceUnavailableError
from utils.rw_lock import ReadWriteLock

logger = logging.getLogger(__name__)

GROUP_OK = "ok"
GROUP_SKIPPED = "skipped"


class ReconciliationScheduler:
    """Owns the chain -> source registry and the background poll loop"""

    def __init__(
        self,
        order_service,
        notification_service=None,
        poll_interval: int = None,
        lookback_seconds: int = None,
        group_timeout: int = None,
        match_policy: str = None,
        clock: Callable[[], float] = time.time,
    ):
        self.order_service = order_service
        self.notification_service = notification_service
        self.poll_interval = poll_interval or Config.POLL_INTERVAL_SECONDS
        self.lookback_seconds = lookback_seconds or Config.LOOKBACK_WINDOW_SECONDS
        self.group_timeout = group_timeout or Config.EXTERNAL_API_TIMEOUT
        self.match_policy = match_policy or Config.MATCH_POLICY
        self.clock = clock

        self._sources: Dict[str, TransferSource] = {}
        self._sources_lock = ReadWriteLock()

        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.last_stats: Dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register_source(self, chain: str, source: TransferSource) -> None:
        """Add or replace the source for a chain; safe while polling"""
        chain = chain.upper()
        with self._sources_lock.write_locked():
            replaced = chain in self._sources
            self._sources[chain] = source
        logger.info(f"🔌 SOURCE_{'REPLACED' if replaced else 'REGISTERED'}: {chain} -> {source!r}")

    def unregister_source(self, chain: str) -> bool:
        with self._sources_lock.write_locked():
            removed = self._sources.pop(chain.upper(), None)
        if removed is not None:
            logger.info(f"🔌 SOURCE_UNREGISTERED: {chain.upper()}")
        return removed is not None

    def get_source(self, chain: str) -> Optional[TransferSource]:
        with self._sources_lock.read_locked():
            return self._sources.get((chain or "").upper())

    def registered_chains(self) -> List[str]:
        with self._sources_lock.read_locked():
            return sorted(self._sources)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.debug("Reconciliation scheduler already running")
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="reconciliation-poll-loop")
        logger.info(f"🚀 RECONCILIATION_STARTED: polling every {self.poll_interval}s")

    async def stop(self) -> None:
        """Let the in-flight cycle finish, then stop polling"""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("🛑 RECONCILIATION_STOPPED")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"❌ RECONCILIATION_CYCLE_ERROR: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------

    async def poll_once(self) -> Dict[str, Any]:
        """Run one reconciliation cycle and return its statistics"""
        started = time.monotonic()
        stats = {
            "orders": 0,
            "groups": 0,
            "skipped_groups": 0,
            "failed_groups": 0,
            "transfers": 0,
            "matched": 0,
            "confirmed": 0,
            "errors": 0,
        }

        orders = await self.order_service.get_pending_orders()
        stats["orders"] = len(orders)
        groups = self._group_orders(orders)
        stats["groups"] = len(groups)
        if not groups:
            self.last_stats = stats
            return stats

        since = int(self.clock()) - self.lookback_seconds
        keys = list(groups)
        results = await asyncio.gather(
            *(self._process_group(chain, address, groups[(chain, address)], since) for chain, address in keys),
            return_exceptions=True,
        )

        for (chain, address), result in zip(keys, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                stats["failed_groups"] += 1
                if isinstance(result, (SourceUnavailableError, asyncio.TimeoutError)):
                    logger.warning(f"⚠️ RECONCILIATION_GROUP_FAILED: {chain}/{address}: {result!r}")
                else:
                    logger.error(f"❌ RECONCILIATION_GROUP_ERROR: {chain}/{address}: {result}", exc_info=result)
                continue
            if result["status"] == GROUP_SKIPPED:
                stats["skipped_groups"] += 1
                continue
            for key in ("transfers", "matched", "confirmed", "errors"):
                stats[key] += result[key]

        elapsed = time.monotonic() - started
        logger.info(
            f"🔁 RECONCILIATION_CYCLE: {stats['orders']} orders in {stats['groups']} groups, "
            f"{stats['confirmed']} confirmed, {stats['failed_groups']} failed, "
            f"{stats['skipped_groups']} skipped ({elapsed:.2f}s)"
        )
        self.last_stats = stats
        return stats

    @staticmethod
    def _group_orders(orders) -> "OrderedDict[Tuple[str, str], List]":
        groups: "OrderedDict[Tuple[str, str], List]" = OrderedDict()
        for order in orders:
            if not order.pay_chain or not order.pay_address:
                continue
            groups.setdefault((order.pay_chain.upper(), order.pay_address), []).append(order)
        return groups

    async def _process_group(self, chain: str, address: str, orders: List, since: int) -> Dict[str, Any]:
        result = {"status": GROUP_OK, "transfers": 0, "matched": 0, "confirmed": 0, "errors": 0}

        source = self.get_source(chain)
        if source is None:
            logger.warning(f"⚠️ NO_SOURCE: No transfer source registered for chain {chain}, {len(orders)} orders skipped")
            result["status"] = GROUP_SKIPPED
            return result

        transfers = await asyncio.wait_for(source.get_transfers(address, since), timeout=self.group_timeout)
        result["transfers"] = len(transfers)
        if not transfers:
            return result

        used = await self.order_service.get_used_tx_hashes(t.hash for t in transfers)
        if used:
            transfers = [t for t in transfers if t.hash not in used]

        matches = match_transfers(orders, transfers, policy=self.match_policy)
        result["matched"] = len(matches)

        for match in matches:
            order_id, tx_hash = match.order.id, match.transfer.hash
            try:
                confirmed = await self.order_service.confirm_order(order_id, tx_hash, match.transfer)
            except HashPayError as e:
                result["errors"] += 1
                logger.warning(f"⚠️ CONFIRM_REJECTED: {order_id} tx={tx_hash}: {e}")
                continue
            if not confirmed:
                continue

            result["confirmed"] += 1
            logger.info(
                f"💰 PAYMENT_MATCHED: {order_id} {match.transfer.amount} {match.transfer.currency} "
                f"(expected {match.order.pay_amount}) tx={tx_hash}"
            )
            if self.notification_service is not None:
                try:
                    order = await self.order_service.get_order(order_id)
                    await self.notification_service.notify_payment(order)
                except Exception as e:
                    # The order is paid either way; the queue can be refilled manually
                    result["errors"] += 1
                    logger.error(f"❌ NOTIFY_PAYMENT_FAILED: {order_id}: {e}", exc_info=True)

        return result
