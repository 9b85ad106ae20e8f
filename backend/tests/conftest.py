"""
Shared fixtures for the KeyRent test suite.

Every test gets a fresh in-memory SQLite database. Service-level tests work on
a single session; API tests go through FastAPI's TestClient with `get_db` and
the payment gateway overridden.
"""

import os

# Keep notifications and config deterministic before keyrent is imported.
os.environ.setdefault("EMAIL_BACKEND", "console")
os.environ.setdefault("SMS_BACKEND", "disabled")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.pop("PAYSTACK_SECRET_KEY", None)

from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from keyrent.db import build_engine, build_sessionmaker, session_scope
from keyrent.main import app, get_db, get_payment_gateway
from keyrent.models import Base, Listing, User
from keyrent.paystack import PaystackClient
from keyrent.rate_limit import limiter
from keyrent.security import create_access_token
from keyrent.services import build_services

BASE_FEE = 5000
LISTING_FEE = 2000
FEATURED_FEE = 15000


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def svc(db):
    return build_services(
        db,
        base_fee=BASE_FEE,
        listing_fee_amount=LISTING_FEE,
        featured_fee_amount=FEATURED_FEE,
        deliver_notifications=False,
    )


def make_user(db, email, *, role="user", is_verified=False, phone="", password_hash="not-a-real-hash"):
    user = User(email=email, name=email.split("@")[0].title(), role=role, is_verified=is_verified, phone=phone,
                password_hash=password_hash)
    db.add(user)
    db.flush()
    return user


def make_listing(db, owner, *, price=1_500_000, approved=True, title="2 bedroom flat, Yaba", **fields):
    listing = Listing(
        owner_id=owner.id,
        title=title,
        price=price,
        location="Yaba, Lagos",
        contact_phone="+2348012345678",
        contact_email=owner.email,
        approved=approved,
        **fields,
    )
    db.add(listing)
    db.flush()
    return listing


@pytest.fixture
def owner(db):
    return make_user(db, "owner@example.com", role="owner")


@pytest.fixture
def renter(db):
    return make_user(db, "renter@example.com")


@pytest.fixture
def listing(db, owner):
    return make_listing(db, owner)


# -----------------------
# API fixtures
# -----------------------
@pytest.fixture
def gateway():
    gw = Mock(spec=PaystackClient)
    gw.configured = False
    return gw


@pytest.fixture
def client(session_factory, gateway, monkeypatch):
    monkeypatch.setenv("CONTACT_FEE_BASE", str(BASE_FEE))
    monkeypatch.setenv("LISTING_FEE", str(LISTING_FEE))
    monkeypatch.setenv("FEATURED_LISTING_FEE", str(FEATURED_FEE))
    limiter.reset()

    def _get_db():
        with session_scope(session_factory) as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def seed(session_factory):
    """Runs `fn(session)` in its own committed transaction and returns its result."""

    def _seed(fn):
        with session_scope(session_factory) as session:
            return fn(session)

    return _seed


def auth_headers(user_id, role="user"):
    return {"Authorization": f"Bearer {create_access_token(user_id=user_id, role=role)}"}
