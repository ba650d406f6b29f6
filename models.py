"""
Editor Marketplace - Database Schema
====================================

Core schema for the commissioned-editing marketplace:
- Orders moving through a role-gated status lifecycle
- Editor applications with deposit requirements
- Per-user wallets with available and locked funds
- Append-only wallet transaction ledger
- Escrow payments, editor deposits and withdrawal requests

All monetary columns are integer minor units (paise for INR).
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, event, func, text
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from utils.exceptions import ImmutableRecordError


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def _values_check(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class UserRole(Enum):
    CREATOR = "creator"
    EDITOR = "editor"
    ADMIN = "admin"


class OrderStatus(Enum):
    """Order lifecycle states"""
    OPEN = "open"
    APPLIED = "applied"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    PREVIEW_SUBMITTED = "preview_submitted"
    REVISION_REQUESTED = "revision_requested"
    FINAL_SUBMITTED = "final_submitted"
    PUBLISHED = "published"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EditingTier(Enum):
    BASIC = "basic"
    PROFESSIONAL = "professional"
    PREMIUM = "premium"


class ApplicationStatus(Enum):
    APPLIED = "applied"
    APPROVED = "approved"
    REJECTED = "rejected"


class EditorDepositStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    FORFEITED = "forfeited"


class OrderPaymentStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PayoutStatus(Enum):
    PENDING = "pending"
    RELEASED = "released"


class PaymentStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentGatewayName(Enum):
    RAZORPAY = "razorpay"
    STRIPE = "stripe"
    WALLET = "wallet"


class WalletTransactionType(Enum):
    DEPOSIT_LOCK = "deposit_lock"
    DEPOSIT_RELEASE = "deposit_release"
    DEPOSIT_SLASH = "deposit_slash"
    CREDIT = "credit"
    REFUND = "refund"
    TOPUP = "topup"
    PAYOUT = "payout"
    WITHDRAWAL_HOLD = "withdrawal_hold"
    WITHDRAWAL = "withdrawal"
    WITHDRAWAL_REVERSAL = "withdrawal_reversal"


class WithdrawalMethod(Enum):
    UPI = "upi"
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"


class WithdrawalStatus(Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    REJECTED = "rejected"


class FileType(Enum):
    RAW_VIDEO = "raw_video"
    PREVIEW_VIDEO = "preview_video"
    FINAL_VIDEO = "final_video"
    THUMBNAIL = "thumbnail"
    OTHER = "other"


class MessageType(Enum):
    COMMENT = "comment"
    TIMESTAMP_COMMENT = "timestamp_comment"
    SYSTEM = "system"


# ============================================================================
# USERS AND WALLETS
# ============================================================================

class User(Base):
    """Marketplace participant"""
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)

    wallet: Mapped[Optional["Wallet"]] = relationship("Wallet", back_populates="user", uselist=False)

    __table_args__ = (
        CheckConstraint(_values_check('role', UserRole), name='ck_user_role_valid'),
    )


class Wallet(Base):
    """Per-user wallet: available balance plus funds locked against obligations"""
    __tablename__ = 'wallets'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, unique=True)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="INR")

    # Minor units
    balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    locked: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="wallet")

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_wallet_balance_positive'),
        CheckConstraint('locked >= 0', name='ck_wallet_locked_positive'),
    )


class WalletTransaction(Base):
    """Append-only record of every balance-affecting event"""
    __tablename__ = 'wallet_transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=True, index=True)
    transaction_type = Column(String(30), nullable=False)

    # Positive magnitude; direction follows from transaction_type
    amount = Column(BigInteger, nullable=False)
    balance_after = Column(BigInteger, nullable=False)
    locked_after = Column(BigInteger, nullable=False)

    description = Column(Text, nullable=True)
    # Idempotency key: a second operation with the same reference is a no-op
    reference = Column(String(120), unique=True, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_wallet_tx_amount_positive'),
        CheckConstraint(_values_check('transaction_type', WalletTransactionType), name='ck_wallet_tx_type_valid'),
        Index('ix_wallet_tx_user_created', 'user_id', 'created_at'),
    )


@event.listens_for(WalletTransaction, "before_update")
def _reject_wallet_transaction_update(mapper, connection, target):
    raise ImmutableRecordError(f"Wallet transaction {target.id} is append-only and cannot be modified")


@event.listens_for(WalletTransaction, "before_delete")
def _reject_wallet_transaction_delete(mapper, connection, target):
    raise ImmutableRecordError(f"Wallet transaction {target.id} is append-only and cannot be deleted")


# ============================================================================
# ORDERS AND APPLICATIONS
# ============================================================================

class Order(Base):
    """A unit of commissioned editing work"""
    __tablename__ = 'orders'

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    # Participants
    creator_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    editor_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)

    status = Column(String(30), nullable=False, default=OrderStatus.OPEN.value, index=True)

    # Financial details (minor units)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(10), nullable=False, default="INR")
    editing_tier = Column(String(20), nullable=True)

    deadline = Column(DateTime, nullable=True)
    revision_count = Column(Integer, nullable=False, default=0)

    # Lifecycle timestamps
    last_activity_at = Column(DateTime, nullable=True)
    assigned_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    auto_cancel_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(50), nullable=True)

    # Editor deposit
    editor_deposit_required = Column(Boolean, nullable=False, default=False)
    editor_deposit_status = Column(String(20), nullable=True)
    editor_deposit_amount = Column(BigInteger, nullable=True)  # Amount actually held for this order

    # Escrow
    payment_status = Column(String(20), nullable=True)
    payout_status = Column(String(20), nullable=True)

    # Disputes
    is_disputed = Column(Boolean, nullable=False, default=False)
    dispute_reason = Column(Text, nullable=True)
    dispute_created_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), nullable=False)

    creator = relationship("User", foreign_keys=[creator_id])
    editor = relationship("User", foreign_keys=[editor_id])
    applications = relationship("OrderApplication", back_populates="order", order_by="OrderApplication.id")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_order_amount_positive'),
        CheckConstraint('revision_count >= 0', name='ck_order_revision_count_positive'),
        CheckConstraint(_values_check('status', OrderStatus), name='ck_order_status_valid'),
        CheckConstraint(
            f"editor_deposit_status IS NULL OR {_values_check('editor_deposit_status', EditorDepositStatus)}",
            name='ck_order_deposit_status_valid',
        ),
        CheckConstraint(
            f"payment_status IS NULL OR {_values_check('payment_status', OrderPaymentStatus)}",
            name='ck_order_payment_status_valid',
        ),
        CheckConstraint(
            f"payout_status IS NULL OR {_values_check('payout_status', PayoutStatus)}",
            name='ck_order_payout_status_valid',
        ),
        Index('ix_orders_status_created', 'status', 'created_at'),
        Index('ix_orders_status_activity', 'status', 'last_activity_at'),
    )


class OrderApplication(Base):
    """An editor's bid on an open order"""
    __tablename__ = 'order_applications'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    editor_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=ApplicationStatus.APPLIED.value)
    deposit_amount = Column(BigInteger, nullable=False)
    deposit_deadline = Column(DateTime, nullable=False)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="applications")

    __table_args__ = (
        UniqueConstraint('order_id', 'editor_id', name='uq_application_order_editor'),
        CheckConstraint(_values_check('status', ApplicationStatus), name='ck_application_status_valid'),
        # At most one approved application per order
        Index(
            'uq_application_single_approved', 'order_id',
            unique=True,
            sqlite_where=text("status = 'approved'"),
            postgresql_where=text("status = 'approved'"),
        ),
        Index('ix_applications_status_deadline', 'status', 'deposit_deadline'),
    )


class OrderFile(Base):
    """Metadata for an uploaded order file; the bytes live in external storage"""
    __tablename__ = 'order_files'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    uploaded_by = Column(Integer, ForeignKey('users.id'), nullable=False)
    file_type = Column(String(20), nullable=False)
    file_name = Column(String(255), nullable=False)
    storage_key = Column(String(500), nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(_values_check('file_type', FileType), name='ck_order_file_type_valid'),
    )


class OrderMessage(Base):
    __tablename__ = 'order_messages'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    message_type = Column(String(30), nullable=False, default=MessageType.COMMENT.value)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(_values_check('message_type', MessageType), name='ck_order_message_type_valid'),
    )


# ============================================================================
# ESCROW PAYMENTS, DEPOSITS AND WITHDRAWALS
# ============================================================================

class Payment(Base):
    """Creator escrow payment captured through a gateway"""
    __tablename__ = 'payments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)

    gateway = Column(String(20), nullable=False)
    gateway_order_id = Column(String(100), unique=True, nullable=False)
    gateway_payment_id = Column(String(100), nullable=True)

    # Settlement
    platform_fee = Column(BigInteger, nullable=True)
    net_amount = Column(BigInteger, nullable=True)
    released_at = Column(DateTime, nullable=True)
    release_note = Column(Text, nullable=True)
    released_by = Column(Integer, ForeignKey('users.id'), nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_payment_amount_positive'),
        CheckConstraint(_values_check('status', PaymentStatus), name='ck_payment_status_valid'),
    )


class EditorDeposit(Base):
    """Refundable deposit an assigned editor places against an order"""
    __tablename__ = 'editor_deposits'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    editor_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False, default=EditorDepositStatus.PENDING.value)

    gateway = Column(String(20), nullable=False)
    gateway_order_id = Column(String(100), unique=True, nullable=True)
    gateway_payment_id = Column(String(100), nullable=True)
    processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_editor_deposit_amount_positive'),
        CheckConstraint(_values_check('status', EditorDepositStatus), name='ck_editor_deposit_status_valid'),
    )


class WithdrawalRequest(Base):
    """Editor payout request; funds stay locked until processed or rejected"""
    __tablename__ = 'withdrawal_requests'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    payment_method = Column(String(20), nullable=False)
    payment_details = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=WithdrawalStatus.PENDING.value, index=True)
    admin_note = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    processed_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_withdrawal_amount_positive'),
        CheckConstraint(_values_check('payment_method', WithdrawalMethod), name='ck_withdrawal_method_valid'),
        CheckConstraint(_values_check('status', WithdrawalStatus), name='ck_withdrawal_status_valid'),
    )
