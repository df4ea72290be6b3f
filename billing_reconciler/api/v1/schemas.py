"""Pydantic schemas for API request/response validation"""

from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from billing_reconciler.domain.models import BillingStatus, Cadence, LatenessStatus


class BillingRecordCreate(BaseModel):
    """Request body for POST /v1/billing-records"""

    account_id: str = Field(..., min_length=1, description="Owning account id")
    amount_cents: int = Field(..., ge=0, description="Bill amount in cents")
    billing_date: date
    due_date: Optional[date] = Field(None, description="Defaults to billing date + 30 days")
    status: Optional[BillingStatus] = None
    paid_date: Optional[date] = None
    paid_amount_cents: Optional[int] = Field(None, ge=0)
    description: Optional[str] = None
    billing_period_start: Optional[date] = None
    billing_period_end: Optional[date] = None
    notes: Optional[str] = None


class BillingRecordUpdate(BaseModel):
    """Request body for PATCH /v1/billing-records/{id}. Only sent fields change."""

    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(None, ge=0)
    billing_date: Optional[date] = None
    due_date: Optional[date] = None
    status: Optional[BillingStatus] = None
    paid_date: Optional[date] = None
    paid_amount_cents: Optional[int] = Field(None, ge=0)
    description: Optional[str] = None
    billing_period_start: Optional[date] = None
    billing_period_end: Optional[date] = None
    notes: Optional[str] = None


class BillingRecordResponse(BaseModel):
    """A billing record with its status as of today"""

    id: str
    billing_number: str
    account_id: Optional[str]
    amount_cents: int
    billing_date: date
    due_date: date
    status: BillingStatus
    effective_status: BillingStatus
    paid_date: Optional[date] = None
    paid_amount_cents: Optional[int] = None
    settled_amount_cents: int = 0
    description: Optional[str] = None
    billing_period_start: Optional[date] = None
    billing_period_end: Optional[date] = None
    notes: Optional[str] = None
    invoice_id: Optional[str] = None


class PaymentConfirmation(BaseModel):
    """Request body for POST /v1/payments/confirmations"""

    billing_record_id: Optional[str] = None
    invoice_id: Optional[str] = Field(None, description="External invoice id from the invoicing provider")
    amount_cents: Optional[int] = Field(None, ge=0, description="Collected amount; defaults to the full bill")
    paid_date: Optional[date] = None

    @model_validator(mode="after")
    def require_reference(self):
        if not self.billing_record_id and not self.invoice_id:
            raise ValueError("either billing_record_id or invoice_id is required")
        return self


class ReconciliationResponse(BaseModel):
    """Outcome of a billing record mutation"""

    operation: Literal["create", "update", "delete"]
    billing_record_id: str
    billing_number: str
    record_status: BillingStatus
    account_id: Optional[str] = None
    balance_before_cents: int
    balance_after_cents: int
    is_late: LatenessStatus
    replayed: bool = False


class AccountCreate(BaseModel):
    """Request body for POST /v1/accounts"""

    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3, max_length=254)
    account_number: Optional[str] = Field(None, min_length=1, max_length=32)
    region_code: Optional[str] = Field(None, max_length=10)
    invoicing_customer_id: Optional[str] = None
    service_start_date: Optional[date] = None
    billing_day_of_month: int = Field(1, ge=1, le=31)
    billing_cadence: Cadence = Cadence.MONTHLY
    grace_period_days: Optional[int] = Field(None, ge=0)
    payment_method: Optional[str] = None


class AccountUpdate(BaseModel):
    """Request body for PATCH /v1/accounts/{id}. Balance fields are not editable."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1)
    email: Optional[str] = Field(None, min_length=3, max_length=254)
    region_code: Optional[str] = Field(None, max_length=10)
    invoicing_customer_id: Optional[str] = None
    service_start_date: Optional[date] = None
    billing_day_of_month: Optional[int] = Field(None, ge=1, le=31)
    billing_cadence: Optional[Cadence] = None
    grace_period_days: Optional[int] = Field(None, ge=0)
    payment_method: Optional[str] = None


class LatePaymentSchema(BaseModel):
    due_date: date
    paid_date: date
    days_late: int
    amount_cents: int
    late_fee_cents: int


class AccountResponse(BaseModel):
    """Response for account endpoints"""

    id: str
    account_number: str
    name: str
    email: str
    region_code: Optional[str] = None
    invoicing_customer_id: Optional[str] = None
    service_start_date: Optional[date] = None
    billing_day_of_month: int
    billing_cadence: Cadence
    next_billing_date: Optional[date] = None
    account_balance_cents: int
    payment_method: Optional[str] = None
    last_payment_date: Optional[date] = None
    last_payment_amount_cents: Optional[int] = None
    is_late: LatenessStatus
    grace_period_days: int
    late_payment_count: int
    last_late_payment_date: Optional[date] = None
    total_late_fees_cents: int
    late_payment_history: List[LatePaymentSchema] = []


class RefreshResponse(BaseModel):
    """Response for POST /v1/accounts/{id}/refresh"""

    account_id: str
    overdue_records: int
    is_late: LatenessStatus
    next_billing_date: Optional[date] = None


class RefreshSweepResponse(BaseModel):
    """Response for POST /v1/accounts/refresh"""

    accounts_refreshed: int
    overdue_records: int
    late_accounts: int


class InvoiceCreate(BaseModel):
    """Request body for POST /v1/invoices"""

    account_id: str = Field(..., min_length=1)
    total_cents: int = Field(..., ge=0)
    description: Optional[str] = None
    region_code: Optional[str] = Field(None, max_length=10, description="Defaults to the account's region")


class InvoiceResponse(BaseModel):
    id: str
    invoice_number: str
    account_id: str
    total_cents: int
    status: str
    description: Optional[str] = None
