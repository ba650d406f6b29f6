#!/usr/bin/env python3
"""
Deterministic startup - editor marketplace escrow core

Builds the service graph once (rules, clock, notifications, reconciliation),
prepares the database and runs the reconciliation scheduler until interrupted.
Request handlers obtain per-session services through ``services_for``.
"""

import logging
import asyncio
import sys
from dataclasses import dataclass
from typing import List, Optional
from sqlalchemy.orm import Session

from config import Config, MarketplaceRules
from database import SessionLocal, check_connection, create_tables
from jobs.reconciliation_scheduler import ReconciliationScheduler
from services.application_manager import ApplicationManager
from services.ledger_service import LedgerService
from services.notification_service import NotificationService
from services.order_lifecycle_service import OrderLifecycleService
from services.payment_gateway import PaymentGateway
from services.payment_service import PaymentService
from services.reconciliation_service import ReconciliationService
from utils.datetime_helpers import Clock, SystemClock

logger = logging.getLogger(__name__)


@dataclass
class MarketplaceServices:
    """Services bound to one database session"""

    lifecycle: OrderLifecycleService
    applications: ApplicationManager
    ledger: LedgerService
    payments: PaymentService


class StartupManager:
    """
    Startup manager with an explicit, ordered sequence.
    Holds the long-lived collaborators every request shares.
    """

    def __init__(self, rules: Optional[MarketplaceRules] = None, clock: Optional[Clock] = None,
                 notifications: Optional[NotificationService] = None,
                 gateway: Optional[PaymentGateway] = None, session_factory=None):
        self.rules = rules or MarketplaceRules.from_config()
        self.clock = clock or SystemClock()
        self.notifications = notifications or NotificationService()
        self.gateway = gateway
        self.session_factory = session_factory or SessionLocal
        self.reconciliation = ReconciliationService(
            self.session_factory,
            clock=self.clock,
            rules=self.rules,
            notifications=self.notifications,
            batch_size=Config.RECONCILIATION_BATCH_SIZE,
        )
        self.scheduler = ReconciliationScheduler(self.reconciliation)
        self.startup_errors: List[str] = []

    def services_for(self, session: Session) -> MarketplaceServices:
        ledger = LedgerService(session, self.clock, self.rules)
        lifecycle = OrderLifecycleService(session, self.clock, self.rules, self.notifications)
        return MarketplaceServices(
            lifecycle=lifecycle,
            applications=ApplicationManager(session, self.clock, self.rules, self.notifications, lifecycle),
            ledger=ledger,
            payments=PaymentService(
                session, self.gateway, self.clock, self.rules, self.notifications, ledger, lifecycle
            ),
        )

    def initialize_database(self) -> bool:
        try:
            logger.info("🗄️ Initializing database...")
            if not check_connection():
                raise ConnectionError("Database connection test failed")
            create_tables()
            logger.info("✅ Database initialization complete")
            return True
        except Exception as e:
            logger.error(f"❌ Database initialization failed: {e}")
            self.startup_errors.append(f"Database: {e}")
            return False

    def start_scheduler(self) -> bool:
        if not Config.SCHEDULER_ENABLED:
            logger.warning("⚠️ Scheduler disabled - reconciliation jobs will not run")
            return True
        try:
            self.scheduler.start_all()
            return True
        except Exception as e:
            logger.error(f"❌ Scheduler start failed: {e}")
            self.startup_errors.append(f"Scheduler: {e}")
            return False

    def startup_sequence(self) -> bool:
        logger.info("🚀 Starting marketplace core...")
        Config.log_environment_config()

        if not self.initialize_database():
            logger.error("🚨 Critical step failed - cannot continue startup")
            return False
        if not self.start_scheduler():
            return False

        logger.info("✅ Startup sequence completed")
        return True

    def shutdown(self):
        self.scheduler.stop_all()


async def main():
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    manager = StartupManager()
    if not manager.startup_sequence():
        logger.error("❌ Startup failed - exiting")
        sys.exit(1)

    try:
        # Keep the loop alive for the scheduler
        await asyncio.Event().wait()
    finally:
        manager.shutdown()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("👋 Stopped by user")
