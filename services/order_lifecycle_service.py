"""
Order Lifecycle Service

Applies the role-gated transition table to persisted orders. Every status
write is a guarded UPDATE that re-checks the status it was derived from, so
a concurrent request or scheduler sweep that read the same stale row cannot
apply a second transition.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union
from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from config import MarketplaceRules
from models import (
    EditingTier, MessageType, Order, OrderApplication, OrderMessage, OrderStatus, User, UserRole,
)
from services.notification_service import NotificationService, NotificationTemplate
from utils.atomic_transactions import atomic_transaction, locked_order_operation
from utils.datetime_helpers import Clock, SystemClock, ensure_naive_datetime
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import (
    AccessDeniedError, InvalidStateError, NotFoundError, RevisionLimitReachedError, ValidationFailedError,
)
from utils.order_state_machine import OrderStateValidator

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "SYSTEM"

ASSIGNABLE_STATUSES = (OrderStatus.OPEN.value, OrderStatus.APPLIED.value)
DISPUTABLE_STATUSES = (
    OrderStatus.IN_PROGRESS.value,
    OrderStatus.PREVIEW_SUBMITTED.value,
    OrderStatus.REVISION_REQUESTED.value,
)


def _role_value(role: Union[UserRole, str]) -> str:
    return role.value if isinstance(role, UserRole) else str(role).lower()


class OrderLifecycleService:
    """Policy-checked order mutations for request handlers and the scheduler"""

    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        rules: Optional[MarketplaceRules] = None,
        notifications: Optional[NotificationService] = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.rules = rules or MarketplaceRules()
        self.notifications = notifications or NotificationService()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_order(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def _load_user(self, user_id: int) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    @staticmethod
    def _is_participant(order: Order, user_id: int) -> bool:
        return user_id in (order.creator_id, order.editor_id)

    def _visibility_filter(self, user_id: int, role: str):
        if role == UserRole.ADMIN.value:
            return None
        if role == UserRole.CREATOR.value:
            return Order.creator_id == user_id
        if role == UserRole.EDITOR.value:
            applied_order_ids = select(OrderApplication.order_id).where(OrderApplication.editor_id == user_id)
            return or_(
                Order.status == OrderStatus.OPEN.value,
                Order.editor_id == user_id,
                Order.id.in_(applied_order_ids),
            )
        raise AccessDeniedError(f"Unknown role: {role}")

    def _guarded_update(self, order_id: int, expected_statuses: Iterable[str],
                        values: Dict[str, Any], *extra_conditions) -> bool:
        """UPDATE orders ... WHERE status IN expected; True if exactly one row changed"""
        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status.in_(list(expected_statuses)), *extra_conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        updated = result.rowcount == 1
        if updated:
            order = self.db.get(Order, order_id)
            if order is not None:
                self.db.refresh(order)
        return updated

    # ------------------------------------------------------------------
    # Creation and queries
    # ------------------------------------------------------------------

    def create(
        self,
        creator_id: int,
        title: str,
        amount: int,
        currency: Optional[str] = None,
        description: Optional[str] = None,
        editing_tier: Optional[Union[EditingTier, str]] = None,
        deadline: Optional[datetime] = None,
        editor_id: Optional[int] = None,
    ) -> Order:
        """
        Create an order. It starts ASSIGNED when an editor is named up front,
        otherwise OPEN for applications.
        """
        creator = self._load_user(creator_id)
        if creator.role != UserRole.CREATOR.value:
            raise AccessDeniedError("Only creators can create orders")
        if not title or not title.strip():
            raise ValidationFailedError("Title is required")
        try:
            MonetaryDecimal.validate_positive(amount, "order amount")
        except (TypeError, ValueError) as e:
            raise ValidationFailedError(str(e)) from e

        tier_value = None
        if editing_tier is not None:
            try:
                tier_value = EditingTier(
                    editing_tier.value if isinstance(editing_tier, EditingTier) else str(editing_tier).lower()
                ).value
            except ValueError as e:
                raise ValidationFailedError(f"Unknown editing tier: {editing_tier}") from e

        if editor_id is not None:
            editor = self._load_user(editor_id)
            if editor.role != UserRole.EDITOR.value:
                raise ValidationFailedError("Assigned user is not an editor")

        now = self.clock.now()
        with atomic_transaction(self.db):
            order = Order(
                title=title.strip(),
                description=description,
                creator_id=creator_id,
                editor_id=editor_id,
                status=OrderStatus.ASSIGNED.value if editor_id else OrderStatus.OPEN.value,
                amount=amount,
                currency=(currency or self.rules.currency).upper(),
                editing_tier=tier_value,
                deadline=ensure_naive_datetime(deadline),
                revision_count=0,
                assigned_at=now if editor_id else None,
                last_activity_at=now,
                created_at=now,
                updated_at=now,
            )
            self.db.add(order)
            self.db.flush()

        logger.info(f"📝 ORDER_CREATED: #{order.id} by creator {creator_id} status {order.status}")
        return order

    def get(self, order_id: int, user_id: int, role: Union[UserRole, str]) -> Order:
        """Fetch an order the user is allowed to see"""
        role_value = _role_value(role)
        order = self._load_order(order_id)
        condition = self._visibility_filter(user_id, role_value)
        if condition is None:
            return order
        visible = self.db.execute(
            select(Order.id).where(Order.id == order_id, condition)
        ).first()
        if visible is None:
            raise AccessDeniedError("Access denied")
        return order

    def list_for_user(self, user_id: int, role: Union[UserRole, str]) -> List[Order]:
        """
        CREATOR: own orders. EDITOR: open orders, orders assigned to them and
        orders they applied to. ADMIN: everything. Newest first.
        """
        query = select(Order).order_by(Order.created_at.desc(), Order.id.desc())
        condition = self._visibility_filter(user_id, _role_value(role))
        if condition is not None:
            query = query.where(condition)
        return list(self.db.execute(query).scalars().all())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def update_status(self, order_id: int, to_status: Union[OrderStatus, str],
                      actor_id: int, actor_role: Union[UserRole, str]) -> Order:
        """
        Move an order to ``to_status`` on behalf of an actor.

        Raises:
            NotFoundError: order does not exist
            AccessDeniedError: actor is neither admin nor a participant
            InvalidTransitionError: the transition table rejects the move
        """
        role_value = _role_value(actor_role)
        target = to_status.value if isinstance(to_status, OrderStatus) else str(to_status).lower()

        with atomic_transaction(self.db):
            order = self._load_order(order_id)
            if role_value != UserRole.ADMIN.value and not self._is_participant(order, actor_id):
                raise AccessDeniedError("Access denied")

            current = order.status
            OrderStateValidator.ensure_transition(current, target, role_value)
            if current == target:
                return order

            now = self.clock.now()
            values: Dict[str, Any] = {"status": target, "updated_at": now, "last_activity_at": now}
            if target == OrderStatus.COMPLETED.value:
                values["completed_at"] = now
            elif target == OrderStatus.CANCELLED.value:
                values["cancelled_at"] = now
                values["cancellation_reason"] = f"cancelled_by_{role_value}"

            if not self._guarded_update(order_id, [current], values):
                raise InvalidStateError(f"Order {order_id} changed concurrently; status is no longer {current.upper()}")

        logger.info(f"🔄 ORDER_STATUS: #{order_id} {current.upper()} -> {target.upper()} by {role_value.upper()} {actor_id}")
        return order

    def assign_editor(self, order_id: int, editor_id: int, creator_id: int) -> Order:
        """Set the order's editor and move it to ASSIGNED"""
        with atomic_transaction(self.db):
            order = self._load_order(order_id)
            if order.creator_id != creator_id:
                raise AccessDeniedError("Access denied")
            if order.status not in ASSIGNABLE_STATUSES:
                raise InvalidStateError(f"Cannot assign editor to order in status {order.status.upper()}")
            editor = self.db.get(User, editor_id)
            if editor is None:
                raise NotFoundError("Editor not found")
            if editor.role != UserRole.EDITOR.value:
                raise InvalidStateError("Target user is not an editor")

            now = self.clock.now()
            assigned = self._guarded_update(
                order_id,
                ASSIGNABLE_STATUSES,
                {
                    "editor_id": editor_id,
                    "status": OrderStatus.ASSIGNED.value,
                    "assigned_at": now,
                    "last_activity_at": now,
                    "updated_at": now,
                },
                Order.editor_id.is_(None),
            )
            if not assigned:
                raise InvalidStateError("Order was assigned concurrently")

        logger.info(f"👤 EDITOR_ASSIGNED: order #{order_id} -> editor {editor_id}")
        return order

    def system_transition(
        self,
        order_id: int,
        from_statuses: Iterable[Union[OrderStatus, str]],
        to_status: Union[OrderStatus, str],
        condition=None,
        values: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Guarded transition performed by the SYSTEM actor (reconciliation jobs).

        Returns False without side effects when the row no longer matches
        ``from_statuses`` and ``condition``, which makes repeated sweeps no-ops.
        """
        expected = [s.value if isinstance(s, OrderStatus) else str(s).lower() for s in from_statuses]
        target = to_status.value if isinstance(to_status, OrderStatus) else str(to_status).lower()
        now = self.clock.now()

        update_values: Dict[str, Any] = {"status": target, "updated_at": now}
        if target == OrderStatus.CANCELLED.value:
            update_values["cancelled_at"] = now
            update_values["cancellation_reason"] = reason
        update_values.update(values or {})

        extra = [condition] if condition is not None else []
        with atomic_transaction(self.db):
            changed = self._guarded_update(order_id, expected, update_values, *extra)

        if changed:
            logger.info(f"🤖 {SYSTEM_ACTOR}_TRANSITION: order #{order_id} -> {target.upper()} ({reason or 'n/a'})")
        else:
            logger.debug(f"{SYSTEM_ACTOR} transition skipped for order #{order_id}: condition no longer holds")
        return changed

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def request_revision(self, order_id: int, creator_id: int) -> Order:
        """
        Creator asks for another revision of a submitted preview.

        Raises:
            RevisionLimitReachedError: revision_count already at the limit
        """
        max_revisions = self.rules.max_revisions
        with atomic_transaction(self.db):
            with locked_order_operation(order_id, self.db) as order:
                if order.creator_id != creator_id:
                    raise AccessDeniedError("Order not found or access denied")
                if order.revision_count >= max_revisions:
                    raise RevisionLimitReachedError(
                        f"Maximum {max_revisions} revisions allowed. "
                        f"Additional revisions require payment upgrade."
                    )
                current = order.status
                OrderStateValidator.ensure_transition(current, OrderStatus.REVISION_REQUESTED, UserRole.CREATOR)

                now = self.clock.now()
                revised = self._guarded_update(
                    order_id,
                    [current],
                    {
                        "status": OrderStatus.REVISION_REQUESTED.value,
                        "revision_count": Order.revision_count + 1,
                        "last_activity_at": now,
                        "updated_at": now,
                    },
                    Order.revision_count < max_revisions,
                )
                if not revised:
                    raise RevisionLimitReachedError(
                        f"Maximum {max_revisions} revisions allowed. "
                        f"Additional revisions require payment upgrade."
                    )

                self.db.add(OrderMessage(
                    order_id=order_id,
                    user_id=creator_id,
                    message_type=MessageType.SYSTEM.value,
                    content=f"Revision {order.revision_count} of {max_revisions} requested",
                    created_at=now,
                ))
                self.db.flush()

        logger.info(f"✏️ REVISION_REQUESTED: order #{order_id} revision {order.revision_count}/{max_revisions}")
        self.notifications.notify(
            order.editor_id,
            NotificationTemplate.REVISION_REQUESTED,
            {"order_id": order_id, "revision": order.revision_count, "max_revisions": max_revisions},
        )
        return order

    def raise_dispute(self, order_id: int, user_id: int, reason: str) -> Order:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationFailedError("Dispute reason is required")

        with atomic_transaction(self.db):
            order = self._load_order(order_id)
            if not self._is_participant(order, user_id):
                raise AccessDeniedError("Access denied")
            if order.is_disputed:
                raise InvalidStateError("Order is already disputed")
            if order.status not in DISPUTABLE_STATUSES:
                raise InvalidStateError(f"Cannot raise dispute for order in status {order.status.upper()}")

            now = self.clock.now()
            disputed = self._guarded_update(
                order_id,
                DISPUTABLE_STATUSES,
                {
                    "is_disputed": True,
                    "dispute_reason": reason,
                    "dispute_created_at": now,
                    "last_activity_at": now,
                    "updated_at": now,
                },
                Order.is_disputed.is_(False),
            )
            if not disputed:
                raise InvalidStateError("Order is already disputed")

        logger.warning(f"⚠️ DISPUTE_RAISED: order #{order_id} by user {user_id}")
        counterpart = order.editor_id if user_id == order.creator_id else order.creator_id
        self.notifications.notify(
            counterpart, NotificationTemplate.DISPUTE_RAISED, {"order_id": order_id, "reason": reason}
        )
        return order

    def record_activity(self, order_id: int, user_id: int) -> Order:
        """Bump last_activity_at for a participant action (message, upload)"""
        with atomic_transaction(self.db):
            order = self._load_order(order_id)
            if not self._is_participant(order, user_id):
                raise AccessDeniedError("Access denied")
            order.last_activity_at = self.clock.now()
            self.db.flush()
        return order


__all__ = ["OrderLifecycleService", "SYSTEM_ACTOR", "ASSIGNABLE_STATUSES", "DISPUTABLE_STATUSES"]
