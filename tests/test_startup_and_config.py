"""
Startup wiring, configuration rules, money helpers and notification delivery
"""

from decimal import Decimal

import pytest

from config import Config, MarketplaceRules
from database import check_connection, managed_session
from main import MarketplaceServices, StartupManager
from models import User, UserRole
from services.notification_service import NotificationService, NotificationTemplate
from utils.decimal_precision import MonetaryDecimal, format_amount, percentage_of, to_minor_units

from conftest import FailingNotificationSender, RecordingNotificationSender


class TestMarketplaceRules:
    """Business constants"""

    def test_defaults(self):
        rules = MarketplaceRules()
        assert rules.max_active_jobs == 2
        assert rules.max_revisions == 2
        assert rules.deposit_slash_amount == 50000, "500 INR in paise"
        assert rules.ghost_refund_percentage == Decimal("50")
        assert rules.platform_fee_percentage == Decimal("10")

    def test_from_config_converts_major_units(self):
        rules = MarketplaceRules.from_config()
        assert rules.currency == Config.PLATFORM_CURRENCY
        assert rules.default_deposit_amount == to_minor_units(Config.EDITOR_DEPOSIT_AMOUNT, rules.currency)
        assert rules.unassigned_timeout_hours == Config.ORDER_ASSIGN_TIMEOUT_HOURS

    @pytest.mark.parametrize("tier,expected", [("basic", 19900), ("PREMIUM", 149900), (None, 50000), ("gold", 50000)])
    def test_deposit_for_tier(self, tier, expected):
        assert MarketplaceRules().deposit_for_tier(tier) == expected

    def test_percentage_validator_falls_back(self, monkeypatch):
        monkeypatch.setenv("TEST_FEE_PCT", "150")
        assert Config._validate_percentage("TEST_FEE_PCT", "10") == Decimal("10"), "Out-of-range value rejected"
        monkeypatch.setenv("TEST_FEE_PCT", "abc")
        assert Config._validate_percentage("TEST_FEE_PCT", "10") == Decimal("10"), "Garbage rejected"
        monkeypatch.setenv("TEST_FEE_PCT", "12.5")
        assert Config._validate_percentage("TEST_FEE_PCT", "10") == Decimal("12.5")


class TestMoney:
    """Minor-unit conversions"""

    def test_minor_unit_conversion(self):
        assert to_minor_units("499.99", "INR") == 49999
        assert to_minor_units("0.005", "INR") == 1, "Half up"
        assert to_minor_units(1500, "JPY") == 1500, "Zero-decimal currency"
        assert MonetaryDecimal.from_minor_units(49999, "inr") == Decimal("499.99")

    def test_percentage_rounds_half_up(self):
        assert percentage_of(200000, Decimal("10")) == 20000
        assert percentage_of(15, "10") == 2
        assert percentage_of(199, 50) == 100

    def test_floats_rejected(self):
        with pytest.raises(TypeError):
            to_minor_units(10.5, "INR")

    def test_format(self):
        assert format_amount(180000, "INR") == "INR 1800.00"
        assert format_amount(500, "JPY") == "JPY 500"


class TestNotificationService:
    """Delivery failures never reach the caller"""

    def test_sender_receives_message(self):
        sender = RecordingNotificationSender()
        assert NotificationService(sender).notify([1, None, 2], NotificationTemplate.COMMUNICATION_GAP, {"days": 3})
        assert sender.sent == [{"recipients": [1, 2], "template": "communication_gap", "data": {"days": 3}}]

    def test_failure_is_swallowed(self):
        failing = FailingNotificationSender()
        assert NotificationService(failing).notify(7, "payment_released") is False
        assert failing.attempts == 1

    def test_no_recipients(self):
        sender = RecordingNotificationSender()
        assert NotificationService(sender).notify([None], NotificationTemplate.DISPUTE_RAISED) is False
        assert sender.sent == []


class TestStartupManager:
    """Service graph wiring"""

    def test_services_share_collaborators(self, db, session_factory, clock, rules, notifications, gateway):
        manager = StartupManager(rules=rules, clock=clock, notifications=notifications,
                                 gateway=gateway, session_factory=session_factory)
        services = manager.services_for(db)

        assert isinstance(services, MarketplaceServices)
        assert services.applications.lifecycle is services.lifecycle
        assert services.payments.ledger is services.ledger
        assert services.payments.lifecycle is services.lifecycle
        assert services.payments.gateway is gateway
        assert manager.reconciliation.session_factory is session_factory
        assert manager.scheduler.service is manager.reconciliation

    def test_services_work_end_to_end(self, db, session_factory, clock, rules, notifications, creator):
        manager = StartupManager(rules=rules, clock=clock, notifications=notifications,
                                 session_factory=session_factory)
        services = manager.services_for(db)

        order = services.lifecycle.create(creator.id, "Podcast cut", 50000)
        assert services.lifecycle.get(order.id, creator.id, "creator").title == "Podcast cut"


class TestDatabaseHelpers:
    """Session scope and connectivity"""

    def test_managed_session_commits(self, engine, session_factory):
        with managed_session(session_factory) as session:
            session.add(User(email="scope@example.com", name="Scope", role=UserRole.EDITOR.value))

        check = session_factory()
        try:
            assert check.query(User).filter_by(email="scope@example.com").count() == 1
        finally:
            check.close()

    def test_managed_session_rolls_back_and_reraises(self, engine, session_factory):
        with pytest.raises(RuntimeError):
            with managed_session(session_factory) as session:
                session.add(User(email="lost@example.com", name="Lost", role=UserRole.EDITOR.value))
                session.flush()
                raise RuntimeError("boom")

        check = session_factory()
        try:
            assert check.query(User).filter_by(email="lost@example.com").count() == 0, "Rolled back"
        finally:
            check.close()

    def test_check_connection(self, engine):
        assert check_connection(engine) is True
