"""Shared pytest fixtures: an in-memory database per test and an authenticated API client"""
import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-pharmaflow")
os.environ["RATE_LIMIT_ENABLED"] = "false"

from datetime import date
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from auth import create_access_token
from database import get_session
from main import app
from models import Actor, UserRole
from services import inventory_ledger


CUSTOMER = Actor(user_id=101, role=UserRole.CUSTOMER, name="Priya")
OTHER_CUSTOMER = Actor(user_id=102, role=UserRole.CUSTOMER, name="Arun")
PHARMACIST = Actor(user_id=201, role=UserRole.PHARMACIST, name="Meena")
ADMIN = Actor(user_id=301, role=UserRole.ADMIN, name="Admin")


@pytest.fixture(name="engine")
def engine_fixture():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="client")
def client_fixture(engine):
    def get_session_override():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = get_session_override
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


def auth_headers(actor: Actor) -> dict:
    token = create_access_token({"sub": actor.user_id, "role": actor.role.value, "name": actor.name})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer_headers():
    return auth_headers(CUSTOMER)


@pytest.fixture
def pharmacist_headers():
    return auth_headers(PHARMACIST)


@pytest.fixture
def admin_headers():
    return auth_headers(ADMIN)


@pytest.fixture
def make_medicine(session):
    def _make(
        name: str = "Paracetamol 500mg",
        quantity: int = 100,
        reorder_level: int = 10,
        unit_price: float = 10.0,
        expiry_date: Optional[date] = None,
        batch_number: Optional[str] = None,
    ):
        return inventory_ledger.create_medicine(
            session,
            name=name,
            quantity=quantity,
            reorder_level=reorder_level,
            unit_price=unit_price,
            expiry_date=expiry_date,
            batch_number=batch_number,
        )
    return _make
