import os

# Keep the app's own engine off disk; must happen before config is imported.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import catalog
import models  # noqa: F401  (registers tables)
import schemas
from clock import utcnow
from database import Base, get_db
from repository import InMemoryDiscountRepository, SqlDiscountRepository


@pytest.fixture
def engine():
    """In-memory SQLite DB shared by every connection of a test."""
    _engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(_engine)
    yield _engine
    Base.metadata.drop_all(_engine)
    _engine.dispose()


@pytest.fixture
def db_session(engine):
    TestSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    s = TestSession()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def sql_repository(db_session):
    return SqlDiscountRepository(db_session)


@pytest.fixture
def memory_repository():
    return InMemoryDiscountRepository()


@pytest.fixture(params=["sql", "memory"])
def repository(request):
    """Runs a test once per backend."""
    return request.getfixturevalue(f"{request.param}_repository")


@pytest.fixture
def make_discount(repository):
    """Create a discount through the catalog with sensible defaults."""
    def _make(**overrides):
        fields = {
            "name": "Test discount",
            "discount_type": "percentage",
            "discount_value": 10,
            "trigger_type": "cart_total",
            "trigger_condition": {"operator": "gte", "value": 0},
            "is_auto_apply": True,
        }
        fields.update(overrides)
        return catalog.create_discount(repository, schemas.DiscountCreate(**fields))
    return _make


@pytest.fixture
def client(engine):
    from main import app

    TestSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    def override_get_db():
        db = TestSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def make_cart(total, *lines):
    """make_cart(150, ("p1", 2), ("p2", 2))"""
    return schemas.Cart(
        total_amount=total,
        products=[schemas.CartProduct(product_id=pid, quantity=qty) for pid, qty in lines],
    )


def make_record(**overrides):
    """A stored-discount record, for engine tests that bypass a repository."""
    now = utcnow()
    fields = {
        "id": "d-1",
        "name": "Record",
        "discount_type": "percentage",
        "discount_value": 10,
        "trigger_type": "cart_total",
        "trigger_condition": {"operator": "gte", "value": 0},
        "is_active": True,
        "is_auto_apply": True,
        "created_at": now,
        "updated_at": now,
    }
    fields.update(overrides)
    return schemas.Discount(**fields)


@pytest.fixture
def past():
    return utcnow() - timedelta(days=30)


@pytest.fixture
def future():
    return utcnow() + timedelta(days=30)


