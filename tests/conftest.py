"""Shared test fixtures for all test modules."""

import contextlib
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import paybridge.models  # noqa: F401  registers every table on Base.metadata
from paybridge.core import database as db_module
from paybridge.core.database import Base, get_db
from paybridge.models.client import Client
from paybridge.models.invoice import Invoice, InvoiceStatus

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database. Clears data after each test.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture
def db_session():
    """Create a database session for testing."""
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        for _ in gen:
            pass


@pytest.fixture
def client_record(db_session):
    """A payer with in-app notifications on."""
    client = Client(name="Wanjiru Kamau", email="wanjiru@example.com", phone="0712345678")
    db_session.add(client)
    db_session.commit()
    db_session.refresh(client)
    return client


@pytest.fixture
def invoice(db_session, client_record):
    """A sent invoice of 100.00 KES with nothing paid yet."""
    invoice = Invoice(
        invoice_number="INV-20261018-0001",
        client_id=client_record.id,
        total_amount=Decimal("100.00"),
        paid_amount=Decimal("0"),
        currency="KES",
        status=InvoiceStatus.SENT.value,
    )
    db_session.add(invoice)
    db_session.commit()
    db_session.refresh(invoice)
    return invoice
