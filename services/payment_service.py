"""
Payment Service - bridges the payment gateway and the ledger

Gateway calls (order creation, signature verification, status fetch) always
happen before the mutating transaction opens, so a slow or failing provider
never holds a row lock. The transaction then re-checks the record's status
with a guarded UPDATE, which makes verification and webhook delivery safe to
repeat.
"""

import logging
from decimal import Decimal
from typing import Optional, Union
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import MarketplaceRules
from models import (
    ApplicationStatus, EditorDeposit, EditorDepositStatus, Order, OrderApplication, OrderPaymentStatus,
    OrderStatus, Payment, PaymentGatewayName, PaymentStatus, PayoutStatus, User, UserRole,
    WalletTransactionType,
)
from services.ledger_service import LedgerService, ReleaseSummary
from services.notification_service import NotificationService, NotificationTemplate
from services.order_lifecycle_service import OrderLifecycleService
from services.payment_gateway import GatewayEvent, PaymentGateway, SUCCESSFUL_PAYMENT_STATES
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import Clock, SystemClock
from utils.decimal_precision import percentage_of
from utils.exceptions import (
    AccessDeniedError, AlreadyExistsError, InvalidStateError, NotFoundError, PaymentVerificationError,
)
from utils.order_state_machine import OrderStateValidator

logger = logging.getLogger(__name__)

ACTIVE_PAYMENT_STATUSES = (
    PaymentStatus.PENDING.value,
    PaymentStatus.PROCESSING.value,
    PaymentStatus.COMPLETED.value,
)
CAPTURABLE_PAYMENT_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value)


class PaymentService:
    """Escrow payments, editor deposits and settlement"""

    def __init__(
        self,
        db: Session,
        gateway: Optional[PaymentGateway] = None,
        clock: Optional[Clock] = None,
        rules: Optional[MarketplaceRules] = None,
        notifications: Optional[NotificationService] = None,
        ledger: Optional[LedgerService] = None,
        lifecycle: Optional[OrderLifecycleService] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.clock = clock or SystemClock()
        self.rules = rules or MarketplaceRules()
        self.notifications = notifications or NotificationService()
        self.ledger = ledger or LedgerService(db, self.clock, self.rules)
        self.lifecycle = lifecycle or OrderLifecycleService(db, self.clock, self.rules, self.notifications)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_gateway(self) -> PaymentGateway:
        if self.gateway is None:
            raise InvalidStateError("No payment gateway configured")
        return self.gateway

    def _load_order(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def _verify_with_gateway(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> str:
        """Signature check and status fetch; runs outside any mutating transaction"""
        gateway = self._require_gateway()
        if not gateway.verify_signature(gateway_order_id, gateway_payment_id, signature):
            logger.warning(f"🚫 PAYMENT_SIGNATURE_INVALID: gateway order {gateway_order_id}")
            raise PaymentVerificationError("Invalid payment signature")

        status = gateway.fetch_payment_status(gateway_payment_id)
        if status not in SUCCESSFUL_PAYMENT_STATES:
            raise PaymentVerificationError(f"Payment not successful. Status: {status}")

        paid_order_id = gateway.fetch_payment_order_id(gateway_payment_id)
        if paid_order_id is not None and paid_order_id != gateway_order_id:
            raise PaymentVerificationError("Payment does not belong to this order")
        return status

    def _deposit_amount_for(self, order: Order) -> int:
        application = self.db.execute(
            select(OrderApplication).where(
                OrderApplication.order_id == order.id,
                OrderApplication.editor_id == order.editor_id,
                OrderApplication.status == ApplicationStatus.APPROVED.value,
            )
        ).scalar_one_or_none()
        if application is not None:
            return application.deposit_amount
        return self.rules.default_deposit_amount

    @staticmethod
    def _ensure_order_active(order: Order) -> None:
        if OrderStateValidator.is_terminal_state(order.status):
            raise InvalidStateError(f"Order is {order.status}")

    def _check_deposit_payable(self, order: Order, editor_id: int) -> None:
        if order.editor_id != editor_id:
            raise AccessDeniedError("Access denied")
        self._ensure_order_active(order)
        if not order.editor_deposit_required:
            raise InvalidStateError("No deposit is required for this order")
        if order.editor_deposit_status != EditorDepositStatus.PENDING.value:
            raise InvalidStateError(f"Deposit already {order.editor_deposit_status}")

    # ------------------------------------------------------------------
    # Creator escrow payment
    # ------------------------------------------------------------------

    def create_creator_payment(self, order_id: int, creator_id: int) -> Payment:
        order = self._load_order(order_id)
        if order.creator_id != creator_id:
            raise AccessDeniedError("Access denied")
        self._ensure_order_active(order)
        if order.editor_id is None:
            raise InvalidStateError("Editor must be assigned before payment")
        if order.editor_deposit_required and order.editor_deposit_status != EditorDepositStatus.PAID.value:
            raise InvalidStateError("Editor deposit must be paid before payment")
        if self._active_payment(order_id) is not None:
            raise AlreadyExistsError("Payment already initiated for this order")

        gateway = self._require_gateway()
        gateway_order_id = gateway.create_escrow_order(
            order.amount, order.currency, {"order_id": order_id, "kind": "creator_payment"}
        )

        with atomic_transaction(self.db):
            self.db.refresh(order)
            self._ensure_order_active(order)
            if self._active_payment(order_id) is not None:
                raise AlreadyExistsError("Payment already initiated for this order")
            now = self.clock.now()
            payment = Payment(
                order_id=order_id,
                user_id=creator_id,
                amount=order.amount,
                currency=order.currency,
                status=PaymentStatus.PENDING.value,
                gateway=gateway.name,
                gateway_order_id=gateway_order_id,
                created_at=now,
                updated_at=now,
            )
            self.db.add(payment)
            order.payment_status = OrderPaymentStatus.PENDING.value
            order.updated_at = now
            self.db.flush()

        logger.info(f"💳 PAYMENT_CREATED: order #{order_id} gateway order {gateway_order_id}")
        return payment

    def _active_payment(self, order_id: int) -> Optional[Payment]:
        return self.db.execute(
            select(Payment).where(
                Payment.order_id == order_id,
                Payment.status.in_(ACTIVE_PAYMENT_STATUSES),
            )
        ).scalars().first()

    def _complete_payment(self, payment: Payment, gateway_payment_id: Optional[str]) -> bool:
        now = self.clock.now()
        completed = self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(CAPTURABLE_PAYMENT_STATUSES))
            .values(status=PaymentStatus.COMPLETED.value, gateway_payment_id=gateway_payment_id, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        if completed:
            self.db.execute(
                update(Order)
                .where(Order.id == payment.order_id)
                .values(
                    payment_status=OrderPaymentStatus.PAID.value,
                    payout_status=PayoutStatus.PENDING.value,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            logger.info(f"✅ PAYMENT_COMPLETED: payment {payment.id} order #{payment.order_id}")

            order = self.db.get(Order, payment.order_id)
            self.db.refresh(order)
            if order.status == OrderStatus.CANCELLED.value:
                # Captured after the order was cancelled; the money goes straight back to the creator
                logger.warning(f"⚠️ LATE_CAPTURE: payment {payment.id} for cancelled order #{order.id}")
                self.refund_captured_payment(order.id)
        self.db.refresh(payment)
        return completed

    def verify_creator_payment(self, order_id: int, creator_id: int, gateway_order_id: str,
                               gateway_payment_id: str, signature: str) -> Payment:
        """Verify-then-commit confirmation of the creator's escrow payment"""
        payment = self.db.execute(
            select(Payment).where(Payment.gateway_order_id == gateway_order_id)
        ).scalar_one_or_none()
        if payment is None or payment.order_id != order_id:
            raise NotFoundError("Payment not found")
        if payment.user_id != creator_id:
            raise AccessDeniedError("Access denied")
        if payment.status == PaymentStatus.COMPLETED.value:
            return payment

        self._verify_with_gateway(gateway_order_id, gateway_payment_id, signature)

        with atomic_transaction(self.db):
            if not self._complete_payment(payment, gateway_payment_id) \
                    and payment.status != PaymentStatus.COMPLETED.value:
                raise InvalidStateError(f"Payment is {payment.status}")
        return payment

    # ------------------------------------------------------------------
    # Editor deposits
    # ------------------------------------------------------------------

    def create_editor_deposit(self, order_id: int, editor_id: int) -> EditorDeposit:
        order = self._load_order(order_id)
        self._check_deposit_payable(order, editor_id)

        pending = self.db.execute(
            select(EditorDeposit).where(
                EditorDeposit.order_id == order_id,
                EditorDeposit.editor_id == editor_id,
                EditorDeposit.status == EditorDepositStatus.PENDING.value,
            )
        ).scalars().first()
        if pending is not None:
            return pending

        amount = self._deposit_amount_for(order)
        gateway = self._require_gateway()
        gateway_order_id = gateway.create_escrow_order(
            amount, order.currency, {"order_id": order_id, "kind": "editor_deposit"}
        )

        with atomic_transaction(self.db):
            now = self.clock.now()
            deposit = EditorDeposit(
                order_id=order_id,
                editor_id=editor_id,
                amount=amount,
                currency=order.currency,
                status=EditorDepositStatus.PENDING.value,
                gateway=gateway.name,
                gateway_order_id=gateway_order_id,
                created_at=now,
                updated_at=now,
            )
            self.db.add(deposit)
            self.db.flush()

        logger.info(f"💳 DEPOSIT_CREATED: order #{order_id} editor {editor_id} amount {amount}")
        return deposit

    def _settle_captured_deposit(self, deposit: EditorDeposit, gateway_payment_id: Optional[str]) -> bool:
        """Captured deposit money lands in the editor's wallet and is locked against the order"""
        now = self.clock.now()
        claimed = self.db.execute(
            update(EditorDeposit)
            .where(EditorDeposit.id == deposit.id, EditorDeposit.status == EditorDepositStatus.PENDING.value)
            .values(
                status=EditorDepositStatus.PAID.value,
                gateway_payment_id=gateway_payment_id,
                processed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        if not claimed:
            self.db.refresh(deposit)
            return False

        self.ledger.credit_balance(
            deposit.editor_id, deposit.amount, WalletTransactionType.CREDIT,
            order_id=deposit.order_id, description="Editor deposit captured",
            reference=f"deposit:{deposit.id}:capture",
        )

        held = self.db.execute(
            update(Order)
            .where(
                Order.id == deposit.order_id,
                Order.editor_id == deposit.editor_id,
                Order.editor_deposit_status == EditorDepositStatus.PENDING.value,
                Order.status != OrderStatus.CANCELLED.value,
            )
            .values(
                editor_deposit_status=EditorDepositStatus.PAID.value,
                editor_deposit_amount=deposit.amount,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount == 1

        if held:
            self.ledger.lock_deposit(
                deposit.editor_id, deposit.amount, order_id=deposit.order_id,
                reference=f"deposit:{deposit.id}:lock",
            )
        else:
            # Order moved on while the capture was in flight; money stays available to the editor
            self.db.execute(
                update(EditorDeposit)
                .where(EditorDeposit.id == deposit.id)
                .values(status=EditorDepositStatus.REFUNDED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            logger.warning(f"⚠️ DEPOSIT_NOT_HELD: order #{deposit.order_id} no longer awaits a deposit")

        self.db.refresh(deposit)
        order = self.db.get(Order, deposit.order_id)
        if order is not None:
            self.db.refresh(order)
        return True

    def verify_editor_deposit(self, order_id: int, editor_id: int, gateway_order_id: str,
                              gateway_payment_id: str, signature: str) -> EditorDeposit:
        deposit = self.db.execute(
            select(EditorDeposit).where(EditorDeposit.gateway_order_id == gateway_order_id)
        ).scalar_one_or_none()
        if deposit is None or deposit.order_id != order_id:
            raise NotFoundError("Deposit not found")
        if deposit.editor_id != editor_id:
            raise AccessDeniedError("Access denied")
        if deposit.status != EditorDepositStatus.PENDING.value:
            return deposit

        self._verify_with_gateway(gateway_order_id, gateway_payment_id, signature)

        with atomic_transaction(self.db):
            self._settle_captured_deposit(deposit, gateway_payment_id)

        logger.info(f"✅ DEPOSIT_VERIFIED: order #{order_id} editor {editor_id}")
        return deposit

    def pay_editor_deposit_from_wallet(self, order_id: int, editor_id: int) -> EditorDeposit:
        """Hold the deposit directly from the editor's available balance"""
        with atomic_transaction(self.db):
            order = self._load_order(order_id)
            self._check_deposit_payable(order, editor_id)
            amount = self._deposit_amount_for(order)
            now = self.clock.now()

            held = self.db.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.editor_id == editor_id,
                    Order.editor_deposit_status == EditorDepositStatus.PENDING.value,
                )
                .values(
                    editor_deposit_status=EditorDepositStatus.PAID.value,
                    editor_deposit_amount=amount,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if held != 1:
                raise InvalidStateError("Deposit already paid")

            deposit = EditorDeposit(
                order_id=order_id,
                editor_id=editor_id,
                amount=amount,
                currency=order.currency,
                status=EditorDepositStatus.PAID.value,
                gateway=PaymentGatewayName.WALLET.value,
                processed_at=now,
                created_at=now,
                updated_at=now,
            )
            self.db.add(deposit)
            self.db.flush()

            self.ledger.lock_deposit(
                editor_id, amount, order_id=order_id,
                description="Editor deposit held from wallet",
                reference=f"deposit:{deposit.id}:lock",
            )
            self.db.refresh(order)

        logger.info(f"🔒 DEPOSIT_HELD_FROM_WALLET: order #{order_id} editor {editor_id} amount {amount}")
        return deposit

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def handle_gateway_event(self, event: Union[GatewayEvent, str], gateway_order_id: str,
                             gateway_payment_id: Optional[str] = None) -> bool:
        """
        Apply an asynchronous gateway event. Returns True if anything changed.
        Signature validation of the webhook body happens upstream.
        """
        try:
            event_type = GatewayEvent(event.value if isinstance(event, GatewayEvent) else str(event).lower())
        except ValueError:
            logger.info(f"Ignoring unsupported gateway event {event}")
            return False

        payment = self.db.execute(
            select(Payment).where(Payment.gateway_order_id == gateway_order_id)
        ).scalar_one_or_none()
        deposit = None
        if payment is None:
            deposit = self.db.execute(
                select(EditorDeposit).where(EditorDeposit.gateway_order_id == gateway_order_id)
            ).scalar_one_or_none()

        if payment is None and deposit is None:
            logger.warning(f"⚠️ WEBHOOK_UNKNOWN_ORDER: {event_type.value} for gateway order {gateway_order_id}")
            return False

        with atomic_transaction(self.db):
            if event_type == GatewayEvent.CAPTURED:
                if payment is not None:
                    changed = self._complete_payment(payment, gateway_payment_id)
                else:
                    changed = self._settle_captured_deposit(deposit, gateway_payment_id)
            elif payment is not None:
                changed = self._fail_payment(payment, gateway_payment_id)
            else:
                # Deposit stays PENDING so the editor can retry
                logger.warning(f"⚠️ DEPOSIT_PAYMENT_FAILED: order #{deposit.order_id} editor {deposit.editor_id}")
                changed = False

        return changed

    def _fail_payment(self, payment: Payment, gateway_payment_id: Optional[str]) -> bool:
        now = self.clock.now()
        failed = self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(CAPTURABLE_PAYMENT_STATUSES))
            .values(status=PaymentStatus.FAILED.value, gateway_payment_id=gateway_payment_id, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        if failed:
            self.db.execute(
                update(Order)
                .where(Order.id == payment.order_id)
                .values(payment_status=OrderPaymentStatus.FAILED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            logger.warning(f"❌ PAYMENT_FAILED: payment {payment.id} order #{payment.order_id}")
        self.db.refresh(payment)
        return failed

    # ------------------------------------------------------------------
    # Settlement, refunds and deposit holds
    # ------------------------------------------------------------------

    def _release_escrow(self, payment: Payment, order: Order, released_by: int,
                        note: Optional[str] = None) -> ReleaseSummary:
        """Fee split, editor payout and deposit return; runs inside the caller's transaction"""
        if order.editor_id is None:
            raise InvalidStateError("Order has no editor to pay")

        summary = self.ledger.release_payment(payment.id, note=note, released_by=released_by)
        self.ledger.credit_balance(
            order.editor_id, summary.net_amount, WalletTransactionType.PAYOUT,
            order_id=order.id, description=summary.note,
            reference=f"payment:{payment.id}:payout",
        )
        order.payout_status = PayoutStatus.RELEASED.value
        order.updated_at = self.clock.now()
        self.db.flush()
        self.release_deposit_hold(order.id)
        return summary

    def _notify_released(self, order: Order, summary: ReleaseSummary) -> None:
        self.notifications.notify(
            order.editor_id,
            NotificationTemplate.PAYMENT_RELEASED,
            {"order_id": order.id, "net_amount": summary.net_amount, "currency": summary.currency},
        )

    def release_and_settle(self, payment_id: int, admin_id: int, note: Optional[str] = None) -> ReleaseSummary:
        """
        Release escrow to the editor: mark the payment released, credit the
        net amount, flag the payout, and return the editor's held deposit.

        Raises:
            AccessDeniedError: caller is not an admin
            InvalidStateError: the order was cancelled
        """
        admin = self.db.get(User, admin_id)
        if admin is None or admin.role != UserRole.ADMIN.value:
            raise AccessDeniedError("Only admins can release payments")

        with atomic_transaction(self.db):
            payment = self.db.get(Payment, payment_id)
            if payment is None:
                raise NotFoundError("Payment not found")
            order = self._load_order(payment.order_id)
            self.db.refresh(order)
            if order.status == OrderStatus.CANCELLED.value:
                raise InvalidStateError("Cannot release escrow of a cancelled order")

            summary = self._release_escrow(payment, order, admin_id, note)

        self._notify_released(order, summary)
        return summary

    def complete_order(self, order_id: int, actor_id: int, actor_role: Union[UserRole, str],
                       note: Optional[str] = None) -> Order:
        """
        Move an order to COMPLETED and settle its escrow in one transaction.

        The captured payment is released to the editor (net of the platform
        fee) and the editor's deposit is returned. An order whose escrow an
        admin already released just completes.
        """
        summary = None
        with atomic_transaction(self.db):
            order = self._load_order(order_id)
            self.db.refresh(order)
            payment = self.captured_payment(order_id)
            if payment is None and order.payout_status != PayoutStatus.RELEASED.value:
                raise InvalidStateError("Order has no captured payment to release")

            order = self.lifecycle.update_status(order_id, OrderStatus.COMPLETED, actor_id, actor_role)
            if payment is not None:
                summary = self._release_escrow(payment, order, actor_id, note)
            else:
                self.release_deposit_hold(order_id)

        logger.info(f"🏁 ORDER_COMPLETED: #{order_id} settled by {actor_id}")
        if summary is not None:
            self._notify_released(order, summary)
        return order

    def cancel_order(self, order_id: int, actor_id: int, actor_role: Union[UserRole, str]) -> Order:
        """
        Cancel an order on behalf of a participant or admin.

        Captured escrow goes back to the creator's wallet and the editor's held
        deposit is returned, together with the status change.
        """
        with atomic_transaction(self.db):
            order = self.lifecycle.update_status(order_id, OrderStatus.CANCELLED, actor_id, actor_role)
            refunded = self.refund_captured_payment(order_id)
            released = self.release_deposit_hold(order_id)
            recipients = [uid for uid in (order.creator_id, order.editor_id) if uid is not None and uid != actor_id]

        logger.info(f"🚫 ORDER_CANCELLED: #{order_id} refunded {refunded} deposit returned {released}")
        self.notifications.notify(
            recipients,
            NotificationTemplate.ORDER_CANCELLED,
            {"order_id": order_id, "order_title": order.title, "refunded": refunded},
        )
        return order

    def captured_payment(self, order_id: int) -> Optional[Payment]:
        """The order's completed escrow payment that has not been released or refunded"""
        return self.db.execute(
            select(Payment).where(
                Payment.order_id == order_id,
                Payment.status == PaymentStatus.COMPLETED.value,
                Payment.released_at.is_(None),
            )
        ).scalars().first()

    def refund_captured_payment(self, order_id: int, percentage: Optional[Decimal] = None) -> int:
        """
        Return a captured, unreleased escrow payment to the creator's wallet.

        With ``percentage`` only that share goes back and the rest is retained.
        The payment is closed as REFUNDED either way. Returns the refunded
        amount (0 when nothing was captured).
        """
        with atomic_transaction(self.db):
            payment = self.captured_payment(order_id)
            if payment is None:
                return 0

            now = self.clock.now()
            refunded = self.db.execute(
                update(Payment)
                .where(
                    Payment.id == payment.id,
                    Payment.status == PaymentStatus.COMPLETED.value,
                    Payment.released_at.is_(None),
                )
                .values(status=PaymentStatus.REFUNDED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if refunded != 1:
                return 0

            amount = payment.amount if percentage is None else percentage_of(payment.amount, percentage)
            if amount > 0:
                self.ledger.credit_balance(
                    payment.user_id, amount, WalletTransactionType.REFUND,
                    order_id=order_id, description="Escrow refund",
                    reference=f"payment:{payment.id}:refund",
                )
            self.db.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(payment_status=OrderPaymentStatus.REFUNDED.value, payout_status=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.refresh(payment)

        if amount < payment.amount:
            logger.info(
                f"↩️ ESCROW_PARTIALLY_REFUNDED: order #{order_id} refunded {amount} retained {payment.amount - amount}"
            )
        else:
            logger.info(f"↩️ ESCROW_REFUNDED: order #{order_id} amount {amount}")
        return amount

    def _settle_deposit_hold(self, order_id: int, outcome: EditorDepositStatus) -> int:
        with atomic_transaction(self.db):
            order = self._load_order(order_id)
            if order.editor_id is None or order.editor_deposit_status != EditorDepositStatus.PAID.value:
                return 0

            held = order.editor_deposit_amount or self.rules.deposit_slash_amount
            wallet = self.ledger.get_wallet(order.editor_id)
            locked_before = wallet.locked
            amount = min(held, locked_before)

            now = self.clock.now()
            claimed = self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.editor_deposit_status == EditorDepositStatus.PAID.value)
                .values(editor_deposit_status=outcome.value, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed != 1:
                return 0

            if amount > 0:
                if outcome == EditorDepositStatus.FORFEITED:
                    self.ledger.slash_deposit(
                        order.editor_id, amount, order_id=order_id,
                        reference=f"order:{order_id}:deposit_slash",
                    )
                else:
                    self.ledger.release_deposit(
                        order.editor_id, amount, order_id=order_id,
                        reference=f"order:{order_id}:deposit_release",
                    )
            if amount < held:
                logger.warning(
                    f"⚠️ DEPOSIT_SHORTFALL: order #{order_id} held {held} but editor {order.editor_id} "
                    f"had only {locked_before} locked"
                )

            self.db.execute(
                update(EditorDeposit)
                .where(EditorDeposit.order_id == order_id, EditorDeposit.status == EditorDepositStatus.PAID.value)
                .values(status=outcome.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.refresh(order)

        return amount

    def release_deposit_hold(self, order_id: int) -> int:
        """Return the editor's held deposit for an order to their balance"""
        return self._settle_deposit_hold(order_id, EditorDepositStatus.REFUNDED)

    def forfeit_deposit_hold(self, order_id: int) -> int:
        """Slash the editor's held deposit for an order"""
        return self._settle_deposit_hold(order_id, EditorDepositStatus.FORFEITED)


__all__ = ["PaymentService"]
