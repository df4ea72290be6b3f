"""Pytest fixtures for testing"""

import pytest
from datetime import date
from typing import Callable, Generator
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from billing_reconciler.api.dependencies import get_dispatcher
from billing_reconciler.api.main import create_app
from billing_reconciler.infrastructure.clients.email import EmailClient
from billing_reconciler.infrastructure.clients.invoicing import InvoicingClient
from billing_reconciler.infrastructure.database.models import Account, Base
from billing_reconciler.infrastructure.database.session import get_db
from billing_reconciler.services.accounts import AccountService
from billing_reconciler.services.notifications import NotificationDispatcher, make_invoice_recorder


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db: Session) -> TestClient:
    """Create FastAPI test client with test database and unconfigured providers"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    def override_get_dispatcher():
        return NotificationDispatcher(
            InvoicingClient(secret_key=""),
            EmailClient(api_token=""),
            invoice_recorder=make_invoice_recorder(TestingSessionLocal),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = override_get_dispatcher
    return TestClient(app)


@pytest.fixture
def make_account(db: Session) -> Callable[..., Account]:
    """Onboard accounts with a fixed reference date unless told otherwise"""
    counter = {"n": 0}

    def _make(reference_date: date = date(2024, 3, 1), **fields) -> Account:
        counter["n"] += 1
        fields.setdefault("name", f"Customer {counter['n']}")
        fields.setdefault("email", f"customer{counter['n']}@example.com")
        fields.setdefault("grace_period_days", 5)
        return AccountService(db).onboard(reference_date=reference_date, **fields)

    return _make
