#!/usr/bin/env python3
"""
HashPay Reconciliation Engine - deterministic startup

Sequence: database -> services -> transfer sources -> schedulers, then run
until SIGINT/SIGTERM and stop everything gracefully.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from sqlalchemy import select

from config import Config
from database import SessionLocal, create_tables, managed_session, test_connection
from jobs.engine_scheduler import EngineScheduler
from models import SourceConfig
from services.notification_service import NotificationService
from services.order_service import OrderService
from services.rate_service import RateAggregator
from services.reconciliation_scheduler import ReconciliationScheduler
from services.sources import build_source
from services.stats_service import StatsService
from utils.exceptions import InvalidInputError

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class EngineStartupManager:
    """Builds the engine components explicitly; no process-wide registries"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal
        self.rate_aggregator: Optional[RateAggregator] = None
        self.notification_service: Optional[NotificationService] = None
        self.order_service: Optional[OrderService] = None
        self.stats_service: Optional[StatsService] = None
        self.reconciliation: Optional[ReconciliationScheduler] = None
        self.engine_scheduler: Optional[EngineScheduler] = None
        self.startup_errors = []

    async def initialize_database(self) -> bool:
        try:
            logger.info("🗄️ Initializing database...")
            if not test_connection():
                raise RuntimeError("Database connection test failed")
            if not create_tables():
                raise RuntimeError("Table creation failed")
            logger.info("✅ Database initialization complete")
            return True
        except Exception as e:
            logger.error(f"❌ Database initialization failed: {e}")
            self.startup_errors.append(f"Database: {e}")
            return False

    async def initialize_services(self) -> bool:
        self.rate_aggregator = RateAggregator()
        self.notification_service = NotificationService(session_factory=self.session_factory)
        self.order_service = OrderService(
            rate_aggregator=self.rate_aggregator,
            session_factory=self.session_factory,
            notification_service=self.notification_service,
        )
        self.stats_service = StatsService(session_factory=self.session_factory)
        self.reconciliation = ReconciliationScheduler(
            order_service=self.order_service,
            notification_service=self.notification_service,
        )
        # Method selection validates addresses with the registered adapter
        self.order_service.source_lookup = self.reconciliation.get_source
        self.engine_scheduler = EngineScheduler(
            reconciliation_scheduler=self.reconciliation,
            order_service=self.order_service,
            notification_service=self.notification_service,
        )
        logger.info(f"✅ Services initialized ({len(self.rate_aggregator.sources)} rate sources)")
        return True

    async def register_sources(self) -> bool:
        def load_configs():
            with managed_session(self.session_factory) as session:
                return list(
                    session.execute(select(SourceConfig).where(SourceConfig.enabled.is_(True))).scalars().all()
                )

        configs = await asyncio.to_thread(load_configs)
        for config in configs:
            try:
                self.reconciliation.register_source(config.chain, build_source(config))
            except InvalidInputError as e:
                logger.error(f"❌ Source for {config.chain} not registered: {e}")
                self.startup_errors.append(f"Source {config.chain}: {e}")

        if not self.reconciliation.registered_chains():
            logger.warning("⚠️ No transfer sources registered - pending orders will not be reconciled")
        return True

    async def start(self) -> bool:
        await self.engine_scheduler.start()
        return True

    async def startup_sequence(self) -> bool:
        logger.info("🚀 Starting HashPay reconciliation engine...")
        Config.log_configuration()

        startup_steps = [
            ("Database", self.initialize_database),
            ("Services", self.initialize_services),
            ("Sources", self.register_sources),
            ("Start", self.start),
        ]

        for step_name, step_func in startup_steps:
            logger.info(f"▶️ Executing step: {step_name}")
            if not await step_func():
                logger.error(f"❌ Step '{step_name}' failed - cannot continue startup")
                return False

        if self.startup_errors:
            logger.warning(f"⚠️ Startup completed with {len(self.startup_errors)} warnings:")
            for error in self.startup_errors:
                logger.warning(f"  - {error}")
        else:
            logger.info("✅ Startup sequence completed successfully")
        return True

    async def shutdown(self):
        if self.engine_scheduler is not None:
            await self.engine_scheduler.stop()
        logger.info("👋 Engine stopped")


async def main():
    manager = EngineStartupManager()
    if not await manager.startup_sequence():
        logger.error("❌ Startup failed - exiting")
        sys.exit(1)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; KeyboardInterrupt still works
            pass

    try:
        await stop_event.wait()
    finally:
        await manager.shutdown()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("👋 Engine stopped by user")


if __name__ == "__main__":
    run()
