"""
Shared fixtures for the marketplace test suite.

Key Components:
1. A throwaway SQLite database per test with the full schema
2. A fake clock that tests fast-forward instead of sleeping
3. Recording fakes for notifications, the payment gateway and file storage
4. Small factories for users and orders
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from config import MarketplaceRules
from database import create_database_engine
from models import Base, User, UserRole
from services.application_manager import ApplicationManager
from services.ledger_service import LedgerService
from services.notification_service import NotificationSender, NotificationService
from services.order_lifecycle_service import OrderLifecycleService
from services.payment_gateway import PaymentGateway
from services.payment_service import PaymentService
from services.reconciliation_service import FileStorage, ReconciliationService
from utils.datetime_helpers import Clock

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


class FakeClock(Clock):
    """Clock frozen at a fixed instant until a test advances it"""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 1, 1, 9, 0, 0)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingNotificationSender(NotificationSender):
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def send(self, recipients, template, data):
        self.sent.append({"recipients": list(recipients), "template": template, "data": dict(data)})

    def templates(self) -> List[str]:
        return [message["template"] for message in self.sent]


class FailingNotificationSender(NotificationSender):
    def __init__(self):
        self.attempts = 0

    def send(self, recipients, template, data):
        self.attempts += 1
        raise ConnectionError("SMTP server unavailable")


class FakeGateway(PaymentGateway):
    """In-memory gateway; a signature of ``valid`` passes verification"""

    name = "razorpay"

    def __init__(self):
        self.created: List[Dict[str, Any]] = []
        self.payment_status = "captured"
        self.payment_orders: Dict[str, str] = {}

    def create_escrow_order(self, amount, currency, metadata=None):
        gateway_order_id = f"order_fake_{len(self.created) + 1}"
        self.created.append({"id": gateway_order_id, "amount": amount, "currency": currency, "metadata": metadata})
        return gateway_order_id

    def verify_signature(self, gateway_order_id, gateway_payment_id, signature):
        return signature == "valid"

    def fetch_payment_status(self, gateway_payment_id):
        return self.payment_status

    def fetch_payment_order_id(self, gateway_payment_id):
        return self.payment_orders.get(gateway_payment_id)


class RecordingStorage(FileStorage):
    def __init__(self, fail: bool = False):
        self.deleted: List[str] = []
        self.fail = fail

    def delete(self, storage_key: str) -> None:
        if self.fail:
            raise IOError(f"storage unavailable for {storage_key}")
        self.deleted.append(storage_key)


@pytest.fixture
def engine(tmp_path):
    db_engine = create_database_engine(f"sqlite:///{tmp_path / 'marketplace_test.db'}", echo=False)
    Base.metadata.create_all(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rules():
    return MarketplaceRules()


@pytest.fixture
def sender():
    return RecordingNotificationSender()


@pytest.fixture
def notifications(sender):
    return NotificationService(sender)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def storage():
    return RecordingStorage()


@pytest.fixture
def ledger(db, clock, rules):
    return LedgerService(db, clock, rules)


@pytest.fixture
def lifecycle(db, clock, rules, notifications):
    return OrderLifecycleService(db, clock, rules, notifications)


@pytest.fixture
def applications(db, clock, rules, notifications, lifecycle):
    return ApplicationManager(db, clock, rules, notifications, lifecycle)


@pytest.fixture
def payments(db, gateway, clock, rules, notifications, ledger, lifecycle):
    return PaymentService(db, gateway, clock, rules, notifications, ledger, lifecycle)


@pytest.fixture
def reconciliation(session_factory, clock, rules, notifications, storage):
    return ReconciliationService(session_factory, clock, rules, notifications, storage, batch_size=2)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role: UserRole = UserRole.CREATOR, name: Optional[str] = None) -> User:
        counter["n"] += 1
        user = User(
            email=f"{role.value}{counter['n']}@example.com",
            name=name or f"{role.value.title()} {counter['n']}",
            role=role.value,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def creator(make_user):
    return make_user(UserRole.CREATOR)


@pytest.fixture
def editor(make_user):
    return make_user(UserRole.EDITOR)


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN)


@pytest.fixture
def make_order(lifecycle, creator):
    def _make(amount: int = 200000, **kwargs):
        kwargs.setdefault("creator_id", creator.id)
        kwargs.setdefault("title", "Wedding highlight reel")
        return lifecycle.create(amount=amount, **kwargs)

    return _make


@pytest.fixture
def assigned_order(make_order, applications, ledger, payments, creator, editor):
    """Order with an approved editor whose default deposit is held from the wallet"""
    order = make_order()
    application = applications.apply(order.id, editor.id)
    applications.approve(order.id, application.id, creator.id)
    ledger.top_up(editor.id, 100000)
    payments.pay_editor_deposit_from_wallet(order.id, editor.id)
    return order
