"""Atomic transaction utilities for financial operations and order state changes"""

import logging
from contextlib import contextmanager
from typing import Any, Optional, Generator
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Context manager for atomic database transactions with proper rollback.
    Ensures financial operations are fully atomic and consistent.

    Nested use on the same session is tracked by depth: only the outermost
    block commits, and any failure rolls back the whole unit of work.
    """
    if session is None:
        from database import SessionLocal

        session = SessionLocal()
        logger.debug("Created new sync session for atomic transaction")
        try:
            yield session
            session.commit()
            logger.debug("Sync atomic transaction committed successfully")
        except Exception as e:
            session.rollback()
            logger.error(f"Sync transaction rolled back due to error: {e}")
            raise
        finally:
            session.close()
        return

    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested sync transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost sync transaction committed successfully")

    except Exception as e:
        # Always rollback on error, regardless of nesting
        session.rollback()
        logger.warning(f"Sync transaction rolled back (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))


def _insert_wallet_if_missing(session: Session, user_id: int, currency: str) -> None:
    """INSERT ... ON CONFLICT DO NOTHING so concurrent first use cannot collide"""
    from models import Wallet

    dialect = session.get_bind().dialect.name
    values = {"user_id": user_id, "currency": currency, "balance": 0, "locked": 0}

    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        if session.execute(select(Wallet.id).where(Wallet.user_id == user_id)).first() is None:
            session.add(Wallet(**values))
            session.flush()
        return

    session.execute(insert(Wallet).values(**values).on_conflict_do_nothing(index_elements=["user_id"]))


@contextmanager
def locked_wallet_operation(
    user_id: int, session: Session, currency: str = "INR"
) -> Generator[Any, None, None]:
    """
    Context manager for wallet operations with row-level locking.
    Creates the wallet on first use, then holds ``SELECT ... FOR UPDATE``
    on it for the rest of the enclosing transaction.
    """
    from models import Wallet

    try:
        _insert_wallet_if_missing(session, user_id, currency)

        wallet = session.execute(
            select(Wallet)
            .where(Wallet.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if wallet is None:
            raise ValueError(f"CRITICAL: Wallet still not found after creation attempt for user {user_id}")

        logger.debug(f"🔒 Successfully locked wallet for user {user_id}")
        yield wallet

    except SQLAlchemyError as e:
        logger.error(f"Database error in locked wallet operation: {e}")
        raise


@contextmanager
def locked_order_operation(order_id: int, session: Session) -> Generator[Any, None, None]:
    """
    Context manager for order operations with a row-level lock.
    Serializes competing approvals and scheduler sweeps on the same order.
    """
    from models import Order
    from utils.exceptions import NotFoundError

    try:
        order = session.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if order is None:
            raise NotFoundError("Order not found")

        logger.debug(f"🔒 Acquired lock for order {order_id}")
        yield order

    except SQLAlchemyError as e:
        logger.error(f"Database error in locked order operation: {e}")
        raise


__all__ = [
    "atomic_transaction",
    "locked_wallet_operation",
    "locked_order_operation",
]
