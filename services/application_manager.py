"""
Application Manager - editor bids on open orders

Handles apply, approve-one/reject-rest, and the per-editor active job limit.
Approval runs under the order row lock and guarded updates so two concurrent
approvals for the same order can never both succeed.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import MarketplaceRules
from models import (
    ApplicationStatus, EditorDepositStatus, Order, OrderApplication, OrderStatus, User, UserRole,
)
from services.notification_service import NotificationService, NotificationTemplate
from services.order_lifecycle_service import ASSIGNABLE_STATUSES, OrderLifecycleService
from utils.atomic_transactions import atomic_transaction, locked_order_operation
from utils.datetime_helpers import Clock, SystemClock
from utils.exceptions import (
    AccessDeniedError, AlreadyAppliedError, InvalidStateError, NotFoundError, TooManyActiveJobsError,
)

logger = logging.getLogger(__name__)

# Orders that occupy an editor's capacity
ACTIVE_JOB_STATUSES = (
    OrderStatus.ASSIGNED.value,
    OrderStatus.IN_PROGRESS.value,
    OrderStatus.PREVIEW_SUBMITTED.value,
    OrderStatus.REVISION_REQUESTED.value,
)


class ApplicationManager:
    """Editor application sub-lifecycle"""

    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        rules: Optional[MarketplaceRules] = None,
        notifications: Optional[NotificationService] = None,
        lifecycle: Optional[OrderLifecycleService] = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.rules = rules or MarketplaceRules()
        self.notifications = notifications or NotificationService()
        self.lifecycle = lifecycle or OrderLifecycleService(db, self.clock, self.rules, self.notifications)

    def active_job_count(self, editor_id: int) -> int:
        return self.db.execute(
            select(func.count(Order.id)).where(
                Order.editor_id == editor_id,
                Order.status.in_(ACTIVE_JOB_STATUSES),
            )
        ).scalar_one()

    def active_job_summary(self, editor_id: int) -> Dict[str, Any]:
        active = self.active_job_count(editor_id)
        return {
            "activeJobs": active,
            "maxActiveJobs": self.rules.max_active_jobs,
            "canApply": active < self.rules.max_active_jobs,
        }

    def _ensure_capacity(self, editor_id: int) -> None:
        active = self.active_job_count(editor_id)
        if active >= self.rules.max_active_jobs:
            raise TooManyActiveJobsError(
                f"You can only have {self.rules.max_active_jobs} active jobs at a time "
                f"(currently {active})"
            )

    def apply(self, order_id: int, editor_id: int, message: Optional[str] = None) -> OrderApplication:
        """
        Create an APPLIED application for an OPEN order.

        The deposit amount follows the order's editing tier and the deposit
        deadline is ``deposit_timeout_hours`` from now. The order itself stays
        OPEN so other editors can keep applying.
        """
        with atomic_transaction(self.db):
            order = self.db.get(Order, order_id)
            if order is None:
                raise NotFoundError("Order not found")
            editor = self.db.get(User, editor_id)
            if editor is None or editor.role != UserRole.EDITOR.value:
                raise AccessDeniedError("Only editors can apply to orders")
            if order.status != OrderStatus.OPEN.value:
                raise InvalidStateError("Order is not open for applications")

            existing = self.db.execute(
                select(OrderApplication.id).where(
                    OrderApplication.order_id == order_id,
                    OrderApplication.editor_id == editor_id,
                )
            ).first()
            if existing is not None:
                raise AlreadyAppliedError("Already applied")

            self._ensure_capacity(editor_id)

            now = self.clock.now()
            application = OrderApplication(
                order_id=order_id,
                editor_id=editor_id,
                status=ApplicationStatus.APPLIED.value,
                deposit_amount=self.rules.deposit_for_tier(order.editing_tier),
                deposit_deadline=now + timedelta(hours=self.rules.deposit_timeout_hours),
                message=message,
                created_at=now,
                updated_at=now,
            )
            self.db.add(application)
            try:
                self.db.flush()
            except IntegrityError as e:
                # Concurrent duplicate slipped past the pre-check
                raise AlreadyAppliedError("Already applied") from e

        logger.info(f"📨 APPLICATION_CREATED: #{application.id} editor {editor_id} -> order #{order_id}")
        self.notifications.notify(
            order.creator_id,
            NotificationTemplate.NEW_APPLICATION,
            {"order_id": order_id, "order_title": order.title, "editor_id": editor_id},
        )
        return application

    def approve(self, order_id: int, application_id: int, creator_id: int) -> OrderApplication:
        """
        Approve one application, reject every other pending one, and assign
        the editor with a pending deposit requirement, all in one transaction.
        """
        with atomic_transaction(self.db):
            with locked_order_operation(order_id, self.db) as order:
                if order.creator_id != creator_id:
                    raise AccessDeniedError("Access denied")
                if order.status not in ASSIGNABLE_STATUSES:
                    raise InvalidStateError(f"Order is not accepting approvals (status {order.status.upper()})")

                application = self.db.get(OrderApplication, application_id)
                if application is None or application.order_id != order_id:
                    raise NotFoundError("Application not found")
                if application.status != ApplicationStatus.APPLIED.value:
                    raise InvalidStateError(f"Application is {application.status.upper()}, not APPLIED")

                # Capacity may have changed since the editor applied
                self._ensure_capacity(application.editor_id)

                now = self.clock.now()
                approved = self.db.execute(
                    update(OrderApplication)
                    .where(
                        OrderApplication.id == application_id,
                        OrderApplication.status == ApplicationStatus.APPLIED.value,
                    )
                    .values(status=ApplicationStatus.APPROVED.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if approved != 1:
                    raise InvalidStateError("Application was processed concurrently")

                rejected_editor_ids = list(
                    self.db.execute(
                        select(OrderApplication.editor_id).where(
                            OrderApplication.order_id == order_id,
                            OrderApplication.id != application_id,
                            OrderApplication.status == ApplicationStatus.APPLIED.value,
                        )
                    ).scalars().all()
                )
                self.db.execute(
                    update(OrderApplication)
                    .where(
                        OrderApplication.order_id == order_id,
                        OrderApplication.id != application_id,
                        OrderApplication.status == ApplicationStatus.APPLIED.value,
                    )
                    .values(status=ApplicationStatus.REJECTED.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                self.db.flush()

                self.lifecycle.assign_editor(order_id, application.editor_id, creator_id)

                order.editor_deposit_required = True
                order.editor_deposit_status = EditorDepositStatus.PENDING.value
                self.db.flush()

            self.db.refresh(application)

        logger.info(
            f"✅ APPLICATION_APPROVED: #{application_id} order #{order_id} editor {application.editor_id}, "
            f"rejected {len(rejected_editor_ids)} other(s)"
        )
        self.notifications.notify(
            application.editor_id,
            NotificationTemplate.APPLICATION_APPROVED,
            {"order_id": order_id, "deposit_amount": application.deposit_amount},
        )
        if rejected_editor_ids:
            self.notifications.notify(
                rejected_editor_ids, NotificationTemplate.APPLICATION_REJECTED, {"order_id": order_id}
            )
        return application

    def list_for_order(self, order_id: int, user_id: int,
                       role: Union[UserRole, str] = UserRole.CREATOR) -> List[OrderApplication]:
        """Applications on an order, oldest first; creator or admin only"""
        role_value = role.value if isinstance(role, UserRole) else str(role).lower()
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if role_value != UserRole.ADMIN.value and order.creator_id != user_id:
            raise AccessDeniedError("Access denied")
        return list(
            self.db.execute(
                select(OrderApplication)
                .where(OrderApplication.order_id == order_id)
                .order_by(OrderApplication.created_at.asc(), OrderApplication.id.asc())
            ).scalars().all()
        )


__all__ = ["ApplicationManager", "ACTIVE_JOB_STATUSES"]
