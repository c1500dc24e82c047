import os

os.environ.setdefault("LOYALTY_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("LOYALTY_SCHEDULER_ENABLED", "false")

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from loyalty_engine.core.database import Base, get_db
from loyalty_engine.main import create_app
from loyalty_engine.models import LedgerEntryKind, PointRule, Rank, Voucher, VoucherType
from loyalty_engine.services import ledger_service
from loyalty_engine.utils.datetime import utcnow


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture
def session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(session_factory):
    app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def ranks(session):
    bronze = Rank(
        name="bronze",
        display_name="Bronze",
        min_points=0,
        max_points=1000,
        point_multiplier=Decimal("1.00"),
        discount_percentage=Decimal("0"),
        level=1,
    )
    silver = Rank(
        name="silver",
        display_name="Silver",
        min_points=1000,
        max_points=5000,
        point_multiplier=Decimal("1.50"),
        discount_percentage=Decimal("5"),
        level=2,
    )
    gold = Rank(
        name="gold",
        display_name="Gold",
        min_points=5000,
        max_points=None,
        point_multiplier=Decimal("2.00"),
        discount_percentage=Decimal("10"),
        level=3,
    )
    session.add_all([bronze, silver, gold])
    session.commit()
    return {"bronze": bronze, "silver": silver, "gold": gold}


@pytest.fixture
def account_factory(session):
    def _create(points: int = 0):
        account_id = uuid.uuid4()
        ledger_service.ensure_account(session, account_id)
        if points:
            ledger_service.post(
                session,
                account_id=account_id,
                kind=LedgerEntryKind.BONUS,
                delta=points,
                reason="Opening balance",
            )
        session.commit()
        return account_id

    return _create


@pytest.fixture
def voucher_factory(session):
    def _create(**overrides) -> Voucher:
        now = utcnow()
        values = {
            "code": f"V{uuid.uuid4().hex[:8].upper()}",
            "name": "Test voucher",
            "voucher_type": VoucherType.FIXED,
            "discount_value": Decimal("50000"),
            "required_points": 300,
            "max_usage_per_user": 1,
            "max_total_usage": None,
            "valid_from": now - timedelta(days=1),
            "valid_until": now + timedelta(days=30),
        }
        values.update(overrides)
        voucher = Voucher(**values)
        session.add(voucher)
        session.commit()
        return voucher

    return _create


@pytest.fixture
def rule_factory(session):
    def _create(**overrides) -> PointRule:
        values = {
            "name": "Purchase points",
            "event_type": "purchase",
            "points_per_action": 0,
            "apply_rank_multiplier": False,
            "priority": 100,
        }
        values.update(overrides)
        rule = PointRule(**values)
        session.add(rule)
        session.commit()
        return rule

    return _create
