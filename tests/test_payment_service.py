"""
Payment Service Tests
Verify-then-commit escrow payments, editor deposits, webhooks and settlement
"""

import pytest
from sqlalchemy import func, select

from models import (
    EditorDeposit, EditorDepositStatus, OrderPaymentStatus, OrderStatus, Payment, PaymentStatus,
    PayoutStatus, UserRole, WalletTransaction,
)
from services.payment_gateway import GatewayEvent
from utils.exceptions import (
    AccessDeniedError, AlreadyExistsError, AlreadyReleasedError, InsufficientFundsError, InvalidTransitionError,
    InvalidStateError, PaymentVerificationError,
)


@pytest.fixture
def approved_order(make_order, applications, creator, editor):
    order = make_order(amount=200000)
    application = applications.apply(order.id, editor.id)
    applications.approve(order.id, application.id, creator.id)
    return order


@pytest.fixture
def paid_order(assigned_order, payments, creator):
    """Assigned order whose escrow payment has been captured"""
    payment = payments.create_creator_payment(assigned_order.id, creator.id)
    payments.verify_creator_payment(assigned_order.id, creator.id, payment.gateway_order_id, "pay_1", "valid")
    return assigned_order


class TestEditorDeposit:
    """Deposits are captured into the editor's wallet and held against the order"""

    def test_gateway_deposit_is_locked(self, db, payments, ledger, approved_order, editor, gateway):
        deposit = payments.create_editor_deposit(approved_order.id, editor.id)
        assert deposit.amount == 50000
        assert gateway.created[-1]["metadata"]["kind"] == "editor_deposit"

        payments.verify_editor_deposit(approved_order.id, editor.id, deposit.gateway_order_id, "pay_dep", "valid")

        db.refresh(approved_order)
        wallet = ledger.get_wallet(editor.id)
        assert deposit.status == EditorDepositStatus.PAID.value
        assert approved_order.editor_deposit_status == EditorDepositStatus.PAID.value
        assert approved_order.editor_deposit_amount == 50000
        assert (wallet.balance, wallet.locked) == (0, 50000), "Captured deposit ends up locked"

    def test_repeat_create_returns_pending_deposit(self, payments, approved_order, editor, gateway):
        first = payments.create_editor_deposit(approved_order.id, editor.id)
        second = payments.create_editor_deposit(approved_order.id, editor.id)
        assert first.id == second.id, "Pending deposit reused"
        assert len(gateway.created) == 1, "Only one gateway order"

    def test_bad_signature_rejected_before_any_write(self, db, payments, ledger, approved_order, editor):
        deposit = payments.create_editor_deposit(approved_order.id, editor.id)
        with pytest.raises(PaymentVerificationError):
            payments.verify_editor_deposit(approved_order.id, editor.id, deposit.gateway_order_id, "pay", "forged")

        db.refresh(deposit)
        assert deposit.status == EditorDepositStatus.PENDING.value
        assert ledger.get_wallet(editor.id).locked == 0

    def test_verify_is_idempotent(self, db, payments, approved_order, editor):
        deposit = payments.create_editor_deposit(approved_order.id, editor.id)
        for _ in range(2):
            payments.verify_editor_deposit(approved_order.id, editor.id, deposit.gateway_order_id, "pay", "valid")

        entries = db.execute(
            select(func.count(WalletTransaction.id)).where(WalletTransaction.user_id == editor.id)
        ).scalar_one()
        assert entries == 2, "One capture credit and one lock"

    def test_wallet_deposit_requires_funds(self, payments, approved_order, editor):
        with pytest.raises(InsufficientFundsError):
            payments.pay_editor_deposit_from_wallet(approved_order.id, editor.id)
        assert approved_order.editor_deposit_status == EditorDepositStatus.PENDING.value

    def test_wallet_deposit(self, assigned_order, ledger, editor):
        wallet = ledger.get_wallet(editor.id)
        assert (wallet.balance, wallet.locked) == (50000, 50000)
        assert assigned_order.editor_deposit_status == EditorDepositStatus.PAID.value

    def test_deposit_only_once(self, payments, assigned_order, editor):
        with pytest.raises(InvalidStateError):
            payments.pay_editor_deposit_from_wallet(assigned_order.id, editor.id)

    def test_only_assigned_editor_pays(self, payments, approved_order, make_user):
        with pytest.raises(AccessDeniedError):
            payments.create_editor_deposit(approved_order.id, make_user(UserRole.EDITOR).id)


class TestCreatorPayment:
    """Escrow payment creation and verification"""

    def test_payment_requires_editor_deposit(self, payments, approved_order, creator):
        with pytest.raises(InvalidStateError):
            payments.create_creator_payment(approved_order.id, creator.id)

    def test_payment_requires_editor(self, payments, make_order, creator):
        with pytest.raises(InvalidStateError):
            payments.create_creator_payment(make_order().id, creator.id)

    def test_verify_marks_order_paid(self, db, payments, assigned_order, creator, gateway):
        payment = payments.create_creator_payment(assigned_order.id, creator.id)
        assert payment.status == PaymentStatus.PENDING.value
        assert gateway.created[-1]["amount"] == 200000

        payments.verify_creator_payment(assigned_order.id, creator.id, payment.gateway_order_id, "pay_1", "valid")
        db.refresh(assigned_order)
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.gateway_payment_id == "pay_1"
        assert assigned_order.payment_status == OrderPaymentStatus.PAID.value
        assert assigned_order.payout_status == PayoutStatus.PENDING.value

    def test_duplicate_payment_rejected(self, payments, assigned_order, creator):
        payments.create_creator_payment(assigned_order.id, creator.id)
        with pytest.raises(AlreadyExistsError):
            payments.create_creator_payment(assigned_order.id, creator.id)

    def test_unsuccessful_gateway_status(self, payments, assigned_order, creator, gateway):
        payment = payments.create_creator_payment(assigned_order.id, creator.id)
        gateway.payment_status = "failed"
        with pytest.raises(PaymentVerificationError) as exc_info:
            payments.verify_creator_payment(assigned_order.id, creator.id, payment.gateway_order_id, "p", "valid")
        assert "failed" in str(exc_info.value)
        assert payment.status == PaymentStatus.PENDING.value

    def test_payment_for_another_order_rejected(self, payments, assigned_order, creator, gateway):
        payment = payments.create_creator_payment(assigned_order.id, creator.id)
        gateway.payment_orders["pay_x"] = "order_somewhere_else"
        with pytest.raises(PaymentVerificationError):
            payments.verify_creator_payment(assigned_order.id, creator.id, payment.gateway_order_id, "pay_x", "valid")


class TestGatewayEvents:
    """Webhook events are applied with the same guards as verification"""

    def test_captured_event_completes_payment_once(self, db, payments, assigned_order, creator):
        payment = payments.create_creator_payment(assigned_order.id, creator.id)

        assert payments.handle_gateway_event(GatewayEvent.CAPTURED, payment.gateway_order_id, "pay_w") is True
        assert payments.handle_gateway_event("captured", payment.gateway_order_id, "pay_w") is False, \
            "Redelivered webhook is a no-op"
        db.refresh(assigned_order)
        assert assigned_order.payment_status == OrderPaymentStatus.PAID.value

    def test_failed_event(self, db, payments, assigned_order, creator):
        payment = payments.create_creator_payment(assigned_order.id, creator.id)
        assert payments.handle_gateway_event(GatewayEvent.FAILED, payment.gateway_order_id) is True

        db.refresh(assigned_order)
        assert payment.status == PaymentStatus.FAILED.value
        assert assigned_order.payment_status == OrderPaymentStatus.FAILED.value

    def test_captured_deposit_event(self, db, payments, ledger, approved_order, editor):
        deposit = payments.create_editor_deposit(approved_order.id, editor.id)
        assert payments.handle_gateway_event(GatewayEvent.CAPTURED, deposit.gateway_order_id, "pay_d") is True
        assert ledger.get_wallet(editor.id).locked == 50000

    def test_unknown_gateway_order_ignored(self, payments):
        assert payments.handle_gateway_event(GatewayEvent.CAPTURED, "order_unknown") is False

    def test_unsupported_event_ignored(self, payments):
        assert payments.handle_gateway_event("refund.created", "order_unknown") is False


class TestSettlement:
    """Admin release pays the editor and returns the deposit"""

    def test_release_and_settle(self, db, payments, ledger, paid_order, admin, editor, sender):
        payment = db.execute(select(Payment).where(Payment.order_id == paid_order.id)).scalar_one()

        summary = payments.release_and_settle(payment.id, admin.id, note="Approved")

        db.refresh(paid_order)
        wallet = ledger.get_wallet(editor.id)
        assert summary.net_amount == 180000
        assert summary.platform_fee == 20000
        assert (wallet.balance, wallet.locked) == (50000 + 50000 + 180000, 0), "Net payout plus returned deposit"
        assert paid_order.payout_status == PayoutStatus.RELEASED.value
        assert paid_order.editor_deposit_status == EditorDepositStatus.REFUNDED.value
        deposit = db.execute(select(EditorDeposit).where(EditorDeposit.order_id == paid_order.id)).scalar_one()
        assert deposit.status == EditorDepositStatus.REFUNDED.value
        assert sender.sent[-1]["template"] == "payment_released"

    def test_release_twice_fails_without_double_payout(self, db, payments, ledger, paid_order, admin, editor):
        payment = db.execute(select(Payment).where(Payment.order_id == paid_order.id)).scalar_one()
        payments.release_and_settle(payment.id, admin.id)

        with pytest.raises(AlreadyReleasedError):
            payments.release_and_settle(payment.id, admin.id)
        assert ledger.get_wallet(editor.id).balance == 280000

    def test_non_admin_cannot_release(self, db, payments, paid_order, creator):
        payment = db.execute(select(Payment).where(Payment.order_id == paid_order.id)).scalar_one()
        with pytest.raises(AccessDeniedError):
            payments.release_and_settle(payment.id, creator.id)

    def test_refund_captured_payment(self, db, payments, ledger, paid_order, creator):
        assert payments.refund_captured_payment(paid_order.id) == 200000
        assert payments.refund_captured_payment(paid_order.id) == 0, "Second refund finds nothing"

        db.refresh(paid_order)
        assert paid_order.payment_status == OrderPaymentStatus.REFUNDED.value
        assert ledger.get_wallet(creator.id).balance == 200000
        assert paid_order.status == OrderStatus.ASSIGNED.value, "Refund alone does not move the order"

    def test_release_rejected_for_cancelled_order(self, db, payments, ledger, lifecycle, paid_order, admin,
                                                  creator, editor):
        payment = db.execute(select(Payment).where(Payment.order_id == paid_order.id)).scalar_one()
        lifecycle.update_status(paid_order.id, OrderStatus.CANCELLED, creator.id, UserRole.CREATOR)

        with pytest.raises(InvalidStateError):
            payments.release_and_settle(payment.id, admin.id)

        db.refresh(payment)
        assert payment.released_at is None
        assert ledger.get_wallet(editor.id).balance == 50000, "No payout for a cancelled order"


def _deliver_final(lifecycle, order, editor):
    lifecycle.update_status(order.id, OrderStatus.IN_PROGRESS, editor.id, UserRole.EDITOR)
    lifecycle.update_status(order.id, OrderStatus.FINAL_SUBMITTED, editor.id, UserRole.EDITOR)


class TestOrderCompletion:
    """Completing an order settles its escrow in the same transaction"""

    def test_complete_pays_editor_and_returns_deposit(self, db, payments, ledger, lifecycle, paid_order,
                                                      creator, editor, sender):
        _deliver_final(lifecycle, paid_order, editor)

        order = payments.complete_order(paid_order.id, creator.id, UserRole.CREATOR)

        payment = db.execute(select(Payment).where(Payment.order_id == paid_order.id)).scalar_one()
        wallet = ledger.get_wallet(editor.id)
        assert order.status == OrderStatus.COMPLETED.value
        assert order.completed_at is not None
        assert order.payout_status == PayoutStatus.RELEASED.value
        assert payment.released_at is not None
        assert payment.released_by == creator.id
        assert (wallet.balance, wallet.locked) == (50000 + 50000 + 180000, 0), "Net payout plus returned deposit"
        assert sender.sent[-1]["template"] == "payment_released"

    def test_complete_requires_captured_payment(self, db, payments, lifecycle, assigned_order, creator, editor):
        _deliver_final(lifecycle, assigned_order, editor)

        with pytest.raises(InvalidStateError):
            payments.complete_order(assigned_order.id, creator.id, UserRole.CREATOR)

        db.refresh(assigned_order)
        assert assigned_order.status == OrderStatus.FINAL_SUBMITTED.value

    def test_complete_after_admin_release(self, db, payments, ledger, lifecycle, paid_order, admin, creator, editor):
        payment = db.execute(select(Payment).where(Payment.order_id == paid_order.id)).scalar_one()
        payments.release_and_settle(payment.id, admin.id)
        _deliver_final(lifecycle, paid_order, editor)

        order = payments.complete_order(paid_order.id, creator.id, UserRole.CREATOR)

        assert order.status == OrderStatus.COMPLETED.value
        assert ledger.get_wallet(editor.id).balance == 280000, "Escrow paid out once"

    def test_editor_cannot_complete(self, db, payments, ledger, lifecycle, paid_order, editor):
        _deliver_final(lifecycle, paid_order, editor)

        with pytest.raises(InvalidTransitionError):
            payments.complete_order(paid_order.id, editor.id, UserRole.EDITOR)

        payment = db.execute(select(Payment).where(Payment.order_id == paid_order.id)).scalar_one()
        db.refresh(payment)
        assert payment.released_at is None, "Rolled back with the rejected transition"
        assert ledger.get_wallet(editor.id).locked == 50000


class TestOrderCancellation:
    """Cancelling returns the escrow and the held deposit; cancelled orders take no new money"""

    def test_cancel_refunds_escrow_and_returns_deposit(self, db, payments, ledger, paid_order, creator, editor,
                                                       sender):
        order = payments.cancel_order(paid_order.id, creator.id, UserRole.CREATOR)

        payment = db.execute(select(Payment).where(Payment.order_id == paid_order.id)).scalar_one()
        db.refresh(payment)
        editor_wallet = ledger.get_wallet(editor.id)
        assert order.status == OrderStatus.CANCELLED.value
        assert order.editor_deposit_status == EditorDepositStatus.REFUNDED.value
        assert payment.status == PaymentStatus.REFUNDED.value
        assert ledger.get_wallet(creator.id).balance == 200000
        assert (editor_wallet.balance, editor_wallet.locked) == (100000, 0), "Deposit back in the available balance"
        assert sender.sent[-1]["template"] == "order_cancelled"
        assert sender.sent[-1]["recipients"] == [editor.id]

    def test_cancel_unpaid_order_returns_deposit(self, payments, ledger, assigned_order, admin, creator, editor):
        payments.cancel_order(assigned_order.id, admin.id, UserRole.ADMIN)

        assert ledger.get_wallet(editor.id).locked == 0
        assert ledger.get_wallet(creator.id).balance == 0, "Nothing captured, nothing refunded"

    def test_no_escrow_payment_for_cancelled_order(self, payments, lifecycle, assigned_order, creator, gateway):
        lifecycle.update_status(assigned_order.id, OrderStatus.CANCELLED, creator.id, UserRole.CREATOR)

        with pytest.raises(InvalidStateError):
            payments.create_creator_payment(assigned_order.id, creator.id)
        assert gateway.created == [], "Gateway never asked"

    def test_no_deposit_for_cancelled_order(self, payments, approved_order, creator, editor, gateway):
        payments.cancel_order(approved_order.id, creator.id, UserRole.CREATOR)

        with pytest.raises(InvalidStateError):
            payments.create_editor_deposit(approved_order.id, editor.id)
        with pytest.raises(InvalidStateError):
            payments.pay_editor_deposit_from_wallet(approved_order.id, editor.id)
        assert gateway.created == []

    def test_capture_after_cancel_is_refunded(self, db, payments, ledger, assigned_order, creator):
        payment = payments.create_creator_payment(assigned_order.id, creator.id)
        payments.cancel_order(assigned_order.id, creator.id, UserRole.CREATOR)

        assert payments.handle_gateway_event(GatewayEvent.CAPTURED, payment.gateway_order_id, "pay_late") is True

        db.refresh(assigned_order)
        assert payment.status == PaymentStatus.REFUNDED.value
        assert assigned_order.payment_status == OrderPaymentStatus.REFUNDED.value
        assert ledger.get_wallet(creator.id).balance == 200000, "Late capture lands back with the creator"
