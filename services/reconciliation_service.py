"""
Reconciliation Service - autonomous correction of stale orders

Each job scans candidate ids in keyset batches, then handles every row in its
own session and transaction. Handlers re-check the trigger inside a guarded
UPDATE, so a row that changed after the scan is skipped, and ledger entries
carry deterministic references so a repeated sweep never moves money twice.
Notifications are sent only after the row's transaction has committed.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.orm import Session, aliased

from config import MarketplaceRules
from models import (
    ApplicationStatus, FileType, Order, OrderApplication, OrderFile, OrderStatus, WalletTransactionType,
)
from services.ledger_service import LedgerService
from services.notification_service import NotificationService, NotificationTemplate
from services.order_lifecycle_service import OrderLifecycleService
from services.payment_service import PaymentService
from utils.atomic_transactions import atomic_transaction, locked_order_operation
from utils.datetime_helpers import Clock, SystemClock
from utils.decimal_precision import percentage_of

logger = logging.getLogger(__name__)

# (recipients, template, data) queued until the row's transaction commits
PendingNotification = Tuple[Any, NotificationTemplate, Dict[str, Any]]
RowHandler = Callable[[Session, int], Optional[List[PendingNotification]]]


class FileStorage(ABC):
    """Blob storage holding order media"""

    @abstractmethod
    def delete(self, storage_key: str) -> None:
        ...


class LoggingFileStorage(FileStorage):
    """Used when no storage backend is wired in; only records the request"""

    def delete(self, storage_key: str) -> None:
        logger.info(f"🗑️ STORAGE_DELETE requested for {storage_key}")


def _new_results() -> Dict[str, Any]:
    return {"processed": 0, "skipped": 0, "errors": []}


class ReconciliationService:
    """The seven reconciliation jobs plus ``run_all``"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        clock: Optional[Clock] = None,
        rules: Optional[MarketplaceRules] = None,
        notifications: Optional[NotificationService] = None,
        storage: Optional[FileStorage] = None,
        batch_size: int = 100,
    ):
        if session_factory is None:
            from database import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.rules = rules or MarketplaceRules()
        self.notifications = notifications or NotificationService()
        self.storage = storage or LoggingFileStorage()
        self.batch_size = batch_size

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _candidate_ids(self, id_column, *conditions) -> Iterator[int]:
        """Yield ids matching ``conditions`` in ascending keyset batches"""
        last_id = 0
        while True:
            session = self.session_factory()
            try:
                batch = list(
                    session.execute(
                        select(id_column)
                        .where(id_column > last_id, *conditions)
                        .order_by(id_column.asc())
                        .limit(self.batch_size)
                    ).scalars().all()
                )
            finally:
                session.close()

            if not batch:
                return
            yield from batch
            if len(batch) < self.batch_size:
                return
            last_id = batch[-1]

    def _run_rows(self, job_name: str, row_ids, handler: RowHandler) -> Dict[str, Any]:
        results = _new_results()
        for row_id in row_ids:
            session = self.session_factory()
            try:
                pending = handler(session, row_id)
            except Exception as e:
                logger.error(f"❌ {job_name}_ERROR: row {row_id}: {e}")
                results["errors"].append(f"{job_name} {row_id}: {e}")
                continue
            finally:
                session.close()

            if pending is None:
                results["skipped"] += 1
                continue

            results["processed"] += 1
            for recipients, template, data in pending:
                self.notifications.notify(recipients, template, data)

        if results["processed"] or results["errors"]:
            logger.info(
                f"🔁 {job_name}: processed={results['processed']} skipped={results['skipped']} "
                f"errors={len(results['errors'])}"
            )
        return results

    def _services(self, session: Session) -> Tuple[OrderLifecycleService, LedgerService, PaymentService]:
        ledger = LedgerService(session, self.clock, self.rules)
        lifecycle = OrderLifecycleService(session, self.clock, self.rules, self.notifications)
        payments = PaymentService(
            session, None, self.clock, self.rules, self.notifications, ledger=ledger, lifecycle=lifecycle
        )
        return lifecycle, ledger, payments

    # ------------------------------------------------------------------
    # Deposit timeouts
    # ------------------------------------------------------------------

    def process_deposit_timeouts(self) -> Dict[str, Any]:
        """Reject applications whose deposit deadline passed; reopen orders left without applicants"""
        now = self.clock.now()

        def handle(session: Session, application_id: int) -> Optional[List[PendingNotification]]:
            lifecycle, _, _ = self._services(session)
            with atomic_transaction(session):
                application = session.get(OrderApplication, application_id)
                if application is None:
                    return None
                with locked_order_operation(application.order_id, session) as order:
                    rejected = session.execute(
                        update(OrderApplication)
                        .where(
                            OrderApplication.id == application_id,
                            OrderApplication.status == ApplicationStatus.APPLIED.value,
                            OrderApplication.deposit_deadline < now,
                        )
                        .values(status=ApplicationStatus.REJECTED.value, updated_at=now)
                        .execution_options(synchronize_session=False)
                    ).rowcount
                    if rejected != 1:
                        return None

                    remaining = session.execute(
                        select(func.count(OrderApplication.id)).where(
                            OrderApplication.order_id == order.id,
                            OrderApplication.status == ApplicationStatus.APPLIED.value,
                        )
                    ).scalar_one()
                    if remaining == 0:
                        lifecycle.system_transition(
                            order.id, [OrderStatus.APPLIED], OrderStatus.OPEN, reason="deposit_timeout"
                        )
                    order_id, order_title = order.id, order.title
                editor_id = application.editor_id

            return [(
                editor_id,
                NotificationTemplate.DEPOSIT_TIMEOUT,
                {"order_id": order_id, "order_title": order_title},
            )]

        ids = self._candidate_ids(
            OrderApplication.id,
            OrderApplication.status == ApplicationStatus.APPLIED.value,
            OrderApplication.deposit_deadline < now,
        )
        return self._run_rows("DEPOSIT_TIMEOUT", ids, handle)

    # ------------------------------------------------------------------
    # Order timeouts
    # ------------------------------------------------------------------

    def process_unassigned_timeouts(self) -> Dict[str, Any]:
        """Cancel OPEN orders nobody was assigned to in time"""
        now = self.clock.now()
        cutoff = now - timedelta(hours=self.rules.unassigned_timeout_hours)

        def handle(session: Session, order_id: int) -> Optional[List[PendingNotification]]:
            lifecycle, _, _ = self._services(session)
            with atomic_transaction(session):
                cancelled = lifecycle.system_transition(
                    order_id, [OrderStatus.OPEN], OrderStatus.CANCELLED,
                    condition=Order.created_at < cutoff, reason="unassigned_timeout",
                )
                if not cancelled:
                    return None
                # Outstanding applications die with the order
                session.execute(
                    update(OrderApplication)
                    .where(
                        OrderApplication.order_id == order_id,
                        OrderApplication.status == ApplicationStatus.APPLIED.value,
                    )
                    .values(status=ApplicationStatus.REJECTED.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                order = session.get(Order, order_id)
                creator_id, title = order.creator_id, order.title

            return [(
                creator_id,
                NotificationTemplate.ORDER_UNASSIGNED_TIMEOUT,
                {"order_id": order_id, "order_title": title, "hours": self.rules.unassigned_timeout_hours},
            )]

        ids = self._candidate_ids(
            Order.id, Order.status == OrderStatus.OPEN.value, Order.created_at < cutoff
        )
        return self._run_rows("UNASSIGNED_TIMEOUT", ids, handle)

    def process_not_started_timeouts(self) -> Dict[str, Any]:
        """
        Cancel ASSIGNED orders the editor never started. The creator gets the
        order amount back and the editor's held deposit is slashed.
        """
        now = self.clock.now()
        cutoff = now - timedelta(hours=self.rules.not_started_timeout_hours)

        def handle(session: Session, order_id: int) -> Optional[List[PendingNotification]]:
            lifecycle, ledger, payments = self._services(session)
            with atomic_transaction(session):
                cancelled = lifecycle.system_transition(
                    order_id, [OrderStatus.ASSIGNED], OrderStatus.CANCELLED,
                    condition=Order.assigned_at < cutoff,
                    values={"auto_cancel_at": now},
                    reason="not_started_timeout",
                )
                if not cancelled:
                    return None
                order = session.get(Order, order_id)

                # Captured escrow goes back once; otherwise the order amount is credited
                if payments.refund_captured_payment(order_id) == 0:
                    ledger.credit_balance(
                        order.creator_id, order.amount, WalletTransactionType.REFUND,
                        order_id=order_id, description="Refund: editor did not start the order",
                        reference=f"order:{order_id}:not_started_refund",
                    )
                slashed = payments.forfeit_deposit_hold(order_id)
                editor_id, title, amount = order.editor_id, order.title, order.amount

            return [(
                editor_id,
                NotificationTemplate.ORDER_NOT_STARTED_TIMEOUT,
                {"order_id": order_id, "order_title": title, "refunded": amount, "slashed": slashed},
            )]

        ids = self._candidate_ids(
            Order.id, Order.status == OrderStatus.ASSIGNED.value, Order.assigned_at < cutoff
        )
        return self._run_rows("NOT_STARTED_TIMEOUT", ids, handle)

    def process_deadline_passed(self) -> Dict[str, Any]:
        """Cancel in-flight orders past their deadline; refund escrow and return the editor's deposit"""
        now = self.clock.now()
        in_flight = (OrderStatus.IN_PROGRESS, OrderStatus.REVISION_REQUESTED)

        def handle(session: Session, order_id: int) -> Optional[List[PendingNotification]]:
            lifecycle, _, payments = self._services(session)
            with atomic_transaction(session):
                cancelled = lifecycle.system_transition(
                    order_id, in_flight, OrderStatus.CANCELLED,
                    condition=and_(Order.deadline.isnot(None), Order.deadline < now),
                    reason="deadline_passed",
                )
                if not cancelled:
                    return None
                refunded = payments.refund_captured_payment(order_id)
                payments.release_deposit_hold(order_id)
                order = session.get(Order, order_id)
                recipients, title = [order.creator_id, order.editor_id], order.title

            return [(
                recipients,
                NotificationTemplate.ORDER_DEADLINE_PASSED,
                {"order_id": order_id, "order_title": title, "refunded": refunded},
            )]

        ids = self._candidate_ids(
            Order.id,
            Order.status.in_([s.value for s in in_flight]),
            Order.deadline.isnot(None),
            Order.deadline < now,
        )
        return self._run_rows("DEADLINE_PASSED", ids, handle)

    def run_order_timeouts(self) -> Dict[str, Dict[str, Any]]:
        return {
            "unassigned": self.process_unassigned_timeouts(),
            "not_started": self.process_not_started_timeouts(),
            "deadline_passed": self.process_deadline_passed(),
        }

    # ------------------------------------------------------------------
    # Inactivity
    # ------------------------------------------------------------------

    def process_ghost_editors(self) -> Dict[str, Any]:
        """Cancel ASSIGNED orders whose editor went silent; partial refund, deposit slashed"""
        now = self.clock.now()
        cutoff = now - timedelta(days=self.rules.ghost_editor_days)

        def handle(session: Session, order_id: int) -> Optional[List[PendingNotification]]:
            lifecycle, ledger, payments = self._services(session)
            with atomic_transaction(session):
                cancelled = lifecycle.system_transition(
                    order_id, [OrderStatus.ASSIGNED], OrderStatus.CANCELLED,
                    condition=Order.last_activity_at < cutoff,
                    reason="ghost_editor",
                )
                if not cancelled:
                    return None
                order = session.get(Order, order_id)
                if payments.captured_payment(order_id) is not None:
                    # The partial refund comes out of the captured escrow, which is closed
                    refund = payments.refund_captured_payment(order_id, self.rules.ghost_refund_percentage)
                else:
                    refund = percentage_of(order.amount, self.rules.ghost_refund_percentage)
                    if refund > 0:
                        ledger.credit_balance(
                            order.creator_id, refund, WalletTransactionType.REFUND,
                            order_id=order_id, description="Partial refund: editor inactive",
                            reference=f"order:{order_id}:ghost_refund",
                        )
                slashed = payments.forfeit_deposit_hold(order_id)
                recipients, title = [order.creator_id, order.editor_id], order.title

            return [(
                recipients,
                NotificationTemplate.GHOST_EDITOR_CANCELLED,
                {"order_id": order_id, "order_title": title, "refunded": refund, "slashed": slashed},
            )]

        ids = self._candidate_ids(
            Order.id, Order.status == OrderStatus.ASSIGNED.value, Order.last_activity_at < cutoff
        )
        return self._run_rows("GHOST_EDITOR", ids, handle)

    def detect_communication_gaps(self) -> Dict[str, Any]:
        """Nudge both parties on quiet orders; no state change"""
        now = self.clock.now()
        cutoff = now - timedelta(days=self.rules.communication_gap_days)
        watched = (OrderStatus.IN_PROGRESS.value, OrderStatus.ASSIGNED.value)

        def handle(session: Session, order_id: int) -> Optional[List[PendingNotification]]:
            order = session.get(Order, order_id)
            if order is None or order.status not in watched or order.last_activity_at is None \
                    or order.last_activity_at >= cutoff:
                return None
            days_silent = (now - order.last_activity_at).days
            return [(
                [order.creator_id, order.editor_id],
                NotificationTemplate.COMMUNICATION_GAP,
                {"order_id": order_id, "order_title": order.title, "days": days_silent},
            )]

        ids = self._candidate_ids(
            Order.id, Order.status.in_(watched), Order.last_activity_at < cutoff
        )
        return self._run_rows("COMMUNICATION_GAP", ids, handle)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def _cleanup_file_ids(self, cutoff: datetime) -> List[int]:
        newer = aliased(OrderFile)
        superseded = exists().where(
            newer.order_id == OrderFile.order_id,
            newer.file_type == FileType.PREVIEW_VIDEO.value,
            or_(
                newer.created_at > OrderFile.created_at,
                and_(newer.created_at == OrderFile.created_at, newer.id > OrderFile.id),
            ),
        )
        cancelled_order_ids = select(Order.id).where(
            Order.status == OrderStatus.CANCELLED.value,
            Order.cancelled_at.isnot(None),
            Order.cancelled_at < cutoff,
        )

        ids = set(self._candidate_ids(OrderFile.id, OrderFile.order_id.in_(cancelled_order_ids)))
        ids.update(
            self._candidate_ids(
                OrderFile.id,
                OrderFile.file_type == FileType.PREVIEW_VIDEO.value,
                OrderFile.created_at < cutoff,
                superseded,
            )
        )
        return sorted(ids)

    def cleanup_old_files(self) -> Dict[str, Any]:
        """Delete media of long-cancelled orders and stale superseded previews"""
        cutoff = self.clock.now() - timedelta(days=self.rules.file_cleanup_days)

        def handle(session: Session, file_id: int) -> Optional[List[PendingNotification]]:
            with atomic_transaction(session):
                order_file = session.get(OrderFile, file_id)
                if order_file is None:
                    return None
                file_type, order_id = order_file.file_type, order_file.order_id
                # Blob first: if storage fails the record survives for the next sweep
                self.storage.delete(order_file.storage_key)
                session.delete(order_file)
            logger.info(f"🧹 FILE_CLEANED: #{file_id} ({file_type}) of order #{order_id}")
            return []

        return self._run_rows("FILE_CLEANUP", self._cleanup_file_ids(cutoff), handle)

    # ------------------------------------------------------------------
    # Full sweep
    # ------------------------------------------------------------------

    def run_all(self) -> Dict[str, Any]:
        logger.info("🔄 RECONCILIATION_SWEEP: starting")
        results = {
            "deposit_timeouts": self.process_deposit_timeouts(),
            "order_timeouts": self.run_order_timeouts(),
            "file_cleanup": self.cleanup_old_files(),
            "communication_gaps": self.detect_communication_gaps(),
            "ghost_editors": self.process_ghost_editors(),
        }
        logger.info("✅ RECONCILIATION_SWEEP: complete")
        return results


__all__ = ["ReconciliationService", "FileStorage", "LoggingFileStorage"]
