"""/v1/billing-records - billing record create, update, delete and read"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from billing_reconciler.api.dependencies import get_dispatcher, get_reconciler, get_request_id, parse_id
from billing_reconciler.api.errors import http_error
from billing_reconciler.api.v1.schemas import (
    BillingRecordCreate,
    BillingRecordResponse,
    BillingRecordUpdate,
    ReconciliationResponse,
)
from billing_reconciler.config import settings
from billing_reconciler.domain.exceptions import DomainException
from billing_reconciler.domain.lifecycle import effective_status
from billing_reconciler.domain.models import ReconciliationResult
from billing_reconciler.infrastructure.database.repositories import AccountRepository, BillingRecordRepository
from billing_reconciler.infrastructure.database.session import get_db
from billing_reconciler.services.notifications import NotificationDispatcher
from billing_reconciler.services.reconciler import BillingReconciler
from billing_reconciler.utils.date_utils import today

logger = logging.getLogger(__name__)

router = APIRouter()


def to_response(result: ReconciliationResult) -> ReconciliationResponse:
    return ReconciliationResponse(
        operation=result.operation.value,
        billing_record_id=str(result.billing_record_id),
        billing_number=result.billing_number,
        record_status=result.record_status,
        account_id=str(result.account_id) if result.account_id else None,
        balance_before_cents=result.balance_before_cents,
        balance_after_cents=result.balance_after_cents,
        is_late=result.is_late,
        replayed=result.replayed,
    )


def schedule_notification(
    result: ReconciliationResult,
    background_tasks: BackgroundTasks,
    dispatcher: NotificationDispatcher,
) -> None:
    """Invoice + email only for freshly created, non-cancelled records"""
    if result.should_notify and result.account is not None and result.record is not None:
        background_tasks.add_task(dispatcher.notify, result.account, result.record)


@router.post("/billing-records", response_model=ReconciliationResponse, status_code=201)
def create_billing_record(
    request_body: BillingRecordCreate,
    background_tasks: BackgroundTasks,
    request: Request,
    idempotency_key: Optional[str] = Header(None),
    reconciler: BillingReconciler = Depends(get_reconciler),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Create a billing record and reconcile its account.

    Flow:
    1. Validate and normalize the record (due date, status, paid date)
    2. Apply the amount to the account balance, re-derive lateness
    3. Commit record, account and event together
    4. Schedule invoice creation and email as a background task
    """
    request_id = get_request_id(request)
    account_id = parse_id(request_body.account_id, "account")
    fields = request_body.model_dump(exclude={"account_id", "amount_cents", "billing_date"}, exclude_none=True)

    try:
        result = reconciler.create(
            account_id,
            request_body.amount_cents,
            request_body.billing_date,
            idempotency_key=idempotency_key,
            **fields,
        )
    except DomainException as e:
        raise http_error(e, request_id)

    schedule_notification(result, background_tasks, dispatcher)
    return to_response(result)


@router.patch("/billing-records/{record_id}", response_model=ReconciliationResponse)
def update_billing_record(
    record_id: str,
    request_body: BillingRecordUpdate,
    request: Request,
    idempotency_key: Optional[str] = Header(None),
    reconciler: BillingReconciler = Depends(get_reconciler),
):
    """Apply a partial update; only fields present in the body change"""
    request_id = get_request_id(request)
    record_uuid = parse_id(record_id, "billing record")

    try:
        result = reconciler.update(
            record_uuid,
            request_body.model_dump(exclude_unset=True),
            idempotency_key=idempotency_key,
        )
    except DomainException as e:
        raise http_error(e, request_id)

    return to_response(result)


@router.delete("/billing-records/{record_id}", response_model=ReconciliationResponse)
def delete_billing_record(
    record_id: str,
    request: Request,
    idempotency_key: Optional[str] = Header(None),
    reconciler: BillingReconciler = Depends(get_reconciler),
):
    request_id = get_request_id(request)
    record_uuid = parse_id(record_id, "billing record")

    try:
        result = reconciler.delete(record_uuid, idempotency_key=idempotency_key)
    except DomainException as e:
        raise http_error(e, request_id)

    return to_response(result)


@router.get("/billing-records/{record_id}", response_model=BillingRecordResponse)
def get_billing_record(record_id: str, db: Session = Depends(get_db)):
    """
    Retrieve a billing record.

    Returns:
        Record with both the stored status and the status as of today
        (a pending bill past due date + grace reads as overdue)
    """
    record_uuid = parse_id(record_id, "billing record")

    record = BillingRecordRepository(db).get(record_uuid)
    if not record:
        raise HTTPException(status_code=404, detail="Billing record not found")

    grace = settings.default_grace_period_days
    if record.account_id is not None:
        account = AccountRepository(db).get(record.account_id)
        if account is not None:
            grace = account.grace_period_days
        else:
            logger.warning(f"Billing record {record.billing_number} points at a missing account")

    data = BillingRecordRepository.to_data(record)
    return BillingRecordResponse(
        id=str(record.id),
        billing_number=record.billing_number,
        account_id=str(record.account_id) if record.account_id else None,
        amount_cents=record.amount_cents,
        billing_date=record.billing_date,
        due_date=record.due_date,
        status=data.status,
        effective_status=effective_status(data, grace, today()),
        paid_date=record.paid_date,
        paid_amount_cents=record.paid_amount_cents,
        settled_amount_cents=data.settled_amount_cents,
        description=record.description,
        billing_period_start=record.billing_period_start,
        billing_period_end=record.billing_period_end,
        notes=record.notes,
        invoice_id=record.invoice_id,
    )
