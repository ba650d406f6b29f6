"""
Ledger Service - wallet balances, locks and the append-only transaction trail

Every primitive runs inside ``atomic_transaction`` on the caller's session,
takes the wallet row lock, and mutates through a guarded UPDATE whose WHERE
clause re-checks the funds it is about to move. A zero rowcount means a
concurrent actor got there first and the operation fails without side effects.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Union
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import MarketplaceRules
from models import (
    Payment, PaymentStatus, Wallet, WalletTransaction, WalletTransactionType,
    WithdrawalMethod, WithdrawalRequest, WithdrawalStatus,
)
from utils.atomic_transactions import atomic_transaction, locked_wallet_operation
from utils.datetime_helpers import Clock, SystemClock
from utils.decimal_precision import MonetaryDecimal, format_amount, percentage_of
from utils.exceptions import (
    AlreadyProcessedError, AlreadyReleasedError, InsufficientFundsError,
    InvalidStateError, NotFoundError, ValidationFailedError,
)

logger = logging.getLogger(__name__)

MIN_PAYMENT_DETAILS_LENGTH = 5


@dataclass
class ReleaseSummary:
    """Fee split computed when an escrow payment is released"""
    payment_id: int
    order_id: int
    gross_amount: int
    platform_fee: int
    net_amount: int
    currency: str
    note: str


class LedgerService:
    """Atomic wallet primitives with audit trail"""

    def __init__(self, db: Session, clock: Optional[Clock] = None, rules: Optional[MarketplaceRules] = None):
        self.db = db
        self.clock = clock or SystemClock()
        self.rules = rules or MarketplaceRules()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_amount(amount: int, context: str) -> int:
        try:
            return MonetaryDecimal.validate_positive(amount, context)
        except (TypeError, ValueError) as e:
            raise ValidationFailedError(str(e)) from e

    def _find_by_reference(self, reference: Optional[str]) -> Optional[WalletTransaction]:
        if not reference:
            return None
        return self.db.execute(
            select(WalletTransaction).where(WalletTransaction.reference == reference)
        ).scalar_one_or_none()

    def _move_funds(
        self,
        user_id: int,
        amount: int,
        transaction_type: WalletTransactionType,
        balance_delta: int,
        locked_delta: int,
        order_id: Optional[int] = None,
        description: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> WalletTransaction:
        """
        Apply one balance/locked movement and append its WalletTransaction.

        Args:
            user_id: wallet owner
            amount: positive magnitude recorded on the transaction
            transaction_type: ledger entry type
            balance_delta: signed change to available balance
            locked_delta: signed change to locked funds
            order_id: related order, if any
            description: free-text audit note
            reference: idempotency key; a repeat returns the original entry

        Returns:
            The appended (or previously appended) WalletTransaction
        """
        self._validate_amount(amount, f"{transaction_type.value} amount")

        with atomic_transaction(self.db):
            existing = self._find_by_reference(reference)
            if existing is not None:
                logger.info(f"🔁 IDEMPOTENT_SKIP: ledger reference {reference} already applied (tx {existing.id})")
                return existing

            with locked_wallet_operation(user_id, self.db, self.rules.currency) as wallet:
                available_before, locked_before = wallet.balance, wallet.locked

                conditions = [Wallet.id == wallet.id]
                if balance_delta < 0:
                    conditions.append(Wallet.balance >= -balance_delta)
                if locked_delta < 0:
                    conditions.append(Wallet.locked >= -locked_delta)

                result = self.db.execute(
                    update(Wallet)
                    .where(*conditions)
                    .values(
                        balance=Wallet.balance + balance_delta,
                        locked=Wallet.locked + locked_delta,
                        updated_at=self.clock.now(),
                    )
                    .execution_options(synchronize_session=False)
                )

                if result.rowcount != 1:
                    currency = wallet.currency
                    if balance_delta < 0 and available_before < -balance_delta:
                        raise InsufficientFundsError(
                            f"Insufficient balance: available {format_amount(available_before, currency)}, "
                            f"required {format_amount(-balance_delta, currency)}"
                        )
                    raise InsufficientFundsError(
                        f"Insufficient locked funds: locked {format_amount(locked_before, currency)}, "
                        f"required {format_amount(-locked_delta, currency)}"
                    )

                self.db.refresh(wallet)

                entry = WalletTransaction(
                    user_id=user_id,
                    order_id=order_id,
                    transaction_type=transaction_type.value,
                    amount=amount,
                    balance_after=wallet.balance,
                    locked_after=wallet.locked,
                    description=description,
                    reference=reference,
                    created_at=self.clock.now(),
                )
                self.db.add(entry)
                self.db.flush()

            logger.info(
                f"💰 LEDGER_{transaction_type.name}: user {user_id} amount {amount} "
                f"-> balance {entry.balance_after}, locked {entry.locked_after}"
            )
            return entry

    # ------------------------------------------------------------------
    # Deposit primitives
    # ------------------------------------------------------------------

    def lock_deposit(self, user_id: int, amount: int, order_id: Optional[int] = None,
                     description: Optional[str] = None, reference: Optional[str] = None) -> WalletTransaction:
        """Move funds from available balance into locked. Fails with InsufficientFundsError."""
        return self._move_funds(
            user_id, amount, WalletTransactionType.DEPOSIT_LOCK,
            balance_delta=-amount, locked_delta=amount,
            order_id=order_id, description=description or "Deposit hold", reference=reference,
        )

    def release_deposit(self, user_id: int, amount: int, order_id: Optional[int] = None,
                        description: Optional[str] = None, reference: Optional[str] = None) -> WalletTransaction:
        """Return locked funds to the available balance"""
        return self._move_funds(
            user_id, amount, WalletTransactionType.DEPOSIT_RELEASE,
            balance_delta=amount, locked_delta=-amount,
            order_id=order_id, description=description or "Deposit released", reference=reference,
        )

    def slash_deposit(self, user_id: int, amount: int, order_id: Optional[int] = None,
                      description: Optional[str] = None, reference: Optional[str] = None) -> WalletTransaction:
        """Forfeit locked funds; they leave the user's claim entirely"""
        return self._move_funds(
            user_id, amount, WalletTransactionType.DEPOSIT_SLASH,
            balance_delta=0, locked_delta=-amount,
            order_id=order_id, description=description or "Deposit forfeited", reference=reference,
        )

    def credit_balance(self, user_id: int, amount: int,
                       transaction_type: WalletTransactionType = WalletTransactionType.CREDIT,
                       order_id: Optional[int] = None, description: Optional[str] = None,
                       reference: Optional[str] = None) -> WalletTransaction:
        return self._move_funds(
            user_id, amount, transaction_type,
            balance_delta=amount, locked_delta=0,
            order_id=order_id, description=description, reference=reference,
        )

    def top_up(self, user_id: int, amount: int) -> WalletTransaction:
        """Manual wallet top-up, capped per call"""
        self._validate_amount(amount, "top-up amount")
        if amount > self.rules.max_topup_amount:
            raise ValidationFailedError(
                f"Top-up amount cannot exceed {format_amount(self.rules.max_topup_amount, self.rules.currency)}"
            )
        return self.credit_balance(user_id, amount, WalletTransactionType.TOPUP, description="Wallet top-up")

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    def request_withdrawal(self, user_id: int, amount: int,
                           method: Union[WithdrawalMethod, str], details: str) -> WithdrawalRequest:
        """
        Lock funds for a payout and open a PENDING withdrawal request.

        Raises:
            ValidationFailedError: amount below minimum, unknown method, short details
            InsufficientFundsError: available balance below amount
        """
        self._validate_amount(amount, "withdrawal amount")
        if amount < self.rules.min_withdrawal_amount:
            raise ValidationFailedError(
                f"Minimum withdrawal is {format_amount(self.rules.min_withdrawal_amount, self.rules.currency)}"
            )
        try:
            method_value = WithdrawalMethod(method.value if isinstance(method, WithdrawalMethod) else str(method).lower()).value
        except ValueError as e:
            raise ValidationFailedError(f"Unsupported payment method: {method}") from e
        details = (details or "").strip()
        if len(details) < MIN_PAYMENT_DETAILS_LENGTH:
            raise ValidationFailedError("Payment details are required")

        with atomic_transaction(self.db):
            request = WithdrawalRequest(
                user_id=user_id,
                amount=amount,
                payment_method=method_value,
                payment_details=details,
                status=WithdrawalStatus.PENDING.value,
                created_at=self.clock.now(),
            )
            self.db.add(request)
            self.db.flush()

            self._move_funds(
                user_id, amount, WalletTransactionType.WITHDRAWAL_HOLD,
                balance_delta=-amount, locked_delta=amount,
                description=f"Withdrawal request #{request.id} via {method_value}",
                reference=f"withdrawal:{request.id}:hold",
            )

        logger.info(f"🏧 WITHDRAWAL_REQUESTED: #{request.id} user {user_id} amount {amount}")
        return request

    def process_withdrawal(self, request_id: int, decision: Union[WithdrawalStatus, str],
                           admin_note: Optional[str] = None,
                           processed_by: Optional[int] = None) -> WithdrawalRequest:
        """
        Settle a PENDING withdrawal.

        PROCESSED: locked funds leave the system.
        REJECTED: locked funds return to the available balance.
        """
        try:
            decision_status = WithdrawalStatus(
                decision.value if isinstance(decision, WithdrawalStatus) else str(decision).lower()
            )
        except ValueError as e:
            raise ValidationFailedError(f"Unknown withdrawal decision: {decision}") from e
        if decision_status == WithdrawalStatus.PENDING:
            raise ValidationFailedError("Decision must be PROCESSED or REJECTED")

        with atomic_transaction(self.db):
            request = self.db.get(WithdrawalRequest, request_id)
            if request is None:
                raise NotFoundError("Withdrawal request not found")

            claimed = self.db.execute(
                update(WithdrawalRequest)
                .where(
                    WithdrawalRequest.id == request_id,
                    WithdrawalRequest.status == WithdrawalStatus.PENDING.value,
                )
                .values(
                    status=decision_status.value,
                    admin_note=admin_note,
                    processed_at=self.clock.now(),
                    processed_by=processed_by,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed != 1:
                raise AlreadyProcessedError("Request already processed")

            if decision_status == WithdrawalStatus.PROCESSED:
                self._move_funds(
                    request.user_id, request.amount, WalletTransactionType.WITHDRAWAL,
                    balance_delta=0, locked_delta=-request.amount,
                    description=f"Withdrawal #{request.id} paid out",
                    reference=f"withdrawal:{request.id}:processed",
                )
            else:
                self._move_funds(
                    request.user_id, request.amount, WalletTransactionType.WITHDRAWAL_REVERSAL,
                    balance_delta=request.amount, locked_delta=-request.amount,
                    description=f"Withdrawal #{request.id} rejected",
                    reference=f"withdrawal:{request.id}:rejected",
                )
            self.db.refresh(request)

        logger.info(f"🏧 WITHDRAWAL_{decision_status.name}: #{request_id}")
        return request

    def list_withdrawals(self, user_id: Optional[int] = None,
                         status: Optional[WithdrawalStatus] = None) -> List[WithdrawalRequest]:
        query = select(WithdrawalRequest).order_by(WithdrawalRequest.created_at.desc(), WithdrawalRequest.id.desc())
        if user_id is not None:
            query = query.where(WithdrawalRequest.user_id == user_id)
        if status is not None:
            query = query.where(WithdrawalRequest.status == status.value)
        return list(self.db.execute(query).scalars().all())

    # ------------------------------------------------------------------
    # Escrow release
    # ------------------------------------------------------------------

    def release_payment(self, payment_id: int, note: Optional[str] = None,
                        released_by: Optional[int] = None) -> ReleaseSummary:
        """
        Mark a completed escrow payment released and compute the fee split.

        Does not credit anyone: the caller settles ``net_amount`` to the editor
        inside the same transaction.
        """
        with atomic_transaction(self.db):
            payment = self.db.get(Payment, payment_id)
            if payment is None:
                raise NotFoundError("Payment not found")
            if payment.released_at is not None:
                raise AlreadyReleasedError("Payment already released")
            if payment.status != PaymentStatus.COMPLETED.value:
                raise InvalidStateError(f"Payment is {payment.status}; only completed payments can be released")

            fee_pct = self.rules.platform_fee_percentage
            platform_fee = percentage_of(payment.amount, fee_pct)
            net_amount = payment.amount - platform_fee
            release_note = (
                f"Released {format_amount(net_amount, payment.currency)} to Editor. "
                f"Platform Fee: {format_amount(platform_fee, payment.currency)} "
                f"({Decimal(fee_pct).normalize():f}%)."
            )
            if note:
                release_note = f"{note} | {release_note}"

            released = self.db.execute(
                update(Payment)
                .where(
                    Payment.id == payment_id,
                    Payment.status == PaymentStatus.COMPLETED.value,
                    Payment.released_at.is_(None),
                )
                .values(
                    platform_fee=platform_fee,
                    net_amount=net_amount,
                    released_at=self.clock.now(),
                    release_note=release_note,
                    released_by=released_by,
                    updated_at=self.clock.now(),
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if released != 1:
                raise AlreadyReleasedError("Payment already released")

        logger.info(f"✅ PAYMENT_RELEASED: payment {payment_id} fee {platform_fee} net {net_amount}")
        return ReleaseSummary(
            payment_id=payment.id,
            order_id=payment.order_id,
            gross_amount=payment.amount,
            platform_fee=platform_fee,
            net_amount=net_amount,
            currency=payment.currency,
            note=release_note,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_wallet(self, user_id: int) -> Wallet:
        """Return the user's wallet, creating an empty one on first access"""
        with atomic_transaction(self.db):
            with locked_wallet_operation(user_id, self.db, self.rules.currency) as wallet:
                return wallet

    def get_transactions(self, user_id: int, limit: int = 50) -> List[WalletTransaction]:
        return list(
            self.db.execute(
                select(WalletTransaction)
                .where(WalletTransaction.user_id == user_id)
                .order_by(WalletTransaction.id.desc())
                .limit(limit)
            ).scalars().all()
        )
