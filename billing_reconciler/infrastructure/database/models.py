"""SQLAlchemy ORM models for accounts, billing records and the reconciliation log"""

import uuid
from sqlalchemy import (
    BigInteger,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class Account(Base):
    """Customer account with billing and payment info groups"""

    __tablename__ = "account"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_number = Column(String(32), nullable=False, unique=True, index=True)
    email = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=False)
    region_code = Column(String(16), nullable=True)
    invoicing_customer_id = Column(Text, nullable=True, unique=True)
    service_start_date = Column(Date, nullable=True)

    # Billing info
    billing_day_of_month = Column(Integer, nullable=False, default=1)
    billing_cadence = Column(String(16), nullable=False, default="monthly")
    next_billing_date = Column(Date, nullable=True)
    account_balance_cents = Column(BigInteger, nullable=False, default=0)

    # Payment info
    payment_method = Column(String(32), nullable=True)
    last_payment_date = Column(Date, nullable=True)
    last_payment_amount_cents = Column(BigInteger, nullable=True)
    is_late = Column(String(16), nullable=False, default="current")
    grace_period_days = Column(Integer, nullable=False, default=5)
    late_payment_count = Column(Integer, nullable=False, default=0)
    last_late_payment_date = Column(Date, nullable=True)
    total_late_fees_cents = Column(BigInteger, nullable=False, default=0)
    late_payment_history = Column(JSON, nullable=False, default=list)

    # Bumped on every write; a stale UPDATE raises StaleDataError
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    billing_records = relationship("BillingRecord", back_populates="account")

    __mapper_args__ = {"version_id_col": version}


class BillingRecord(Base):
    """A single bill against an account"""

    __tablename__ = "billing_record"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    billing_number = Column(String(32), nullable=False, unique=True, index=True)
    # Nulled if the account is removed outside this service
    account_id = Column(Uuid, ForeignKey("account.id", ondelete="SET NULL"), nullable=True, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    billing_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    status = Column(String(16), nullable=False, default="pending", index=True)
    paid_date = Column(Date, nullable=True)
    paid_amount_cents = Column(BigInteger, nullable=True)
    settled_amount_cents = Column(BigInteger, nullable=False, default=0)
    description = Column(Text, nullable=True)
    billing_period_start = Column(Date, nullable=True)
    billing_period_end = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)
    invoice_id = Column(Text, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    account = relationship("Account", back_populates="billing_records")


class ReconciliationEvent(Base):
    """Applied billing record event; doubles as the replay guard"""

    __tablename__ = "reconciliation_event"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("account.id"), nullable=False, index=True)
    # No FK: deleted records keep their history
    billing_record_id = Column(Uuid, nullable=False, index=True)
    billing_number = Column(String(32), nullable=False)
    operation = Column(String(16), nullable=False)
    idempotency_key = Column(Text, nullable=True, unique=True)
    amount_delta_cents = Column(BigInteger, nullable=False)
    settlement_delta_cents = Column(BigInteger, nullable=False)
    balance_delta_cents = Column(BigInteger, nullable=False)
    balance_before_cents = Column(BigInteger, nullable=False)
    balance_after_cents = Column(BigInteger, nullable=False)
    record_status = Column(String(16), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SequenceCounter(Base):
    """Monotonic counter per identifier scope"""

    __tablename__ = "sequence_counter"

    scope = Column(String(64), primary_key=True)
    value = Column(BigInteger, nullable=False, default=0)


class Invoice(Base):
    """Invoice document numbered per region"""

    __tablename__ = "invoice"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_number = Column(String(32), nullable=False, unique=True, index=True)
    account_id = Column(Uuid, ForeignKey("account.id"), nullable=False, index=True)
    total_cents = Column(BigInteger, nullable=False)
    status = Column(String(16), nullable=False, default="draft")
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
