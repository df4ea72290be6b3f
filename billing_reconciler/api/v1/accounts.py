"""/v1/accounts - onboarding, direct edits and time-based refresh"""

from fastapi import APIRouter, Depends, Request

from billing_reconciler.api.dependencies import get_account_service, get_request_id, parse_id
from billing_reconciler.api.errors import http_error
from billing_reconciler.api.v1.schemas import (
    AccountCreate,
    AccountResponse,
    AccountUpdate,
    LatePaymentSchema,
    RefreshResponse,
    RefreshSweepResponse,
)
from billing_reconciler.domain.exceptions import DomainException
from billing_reconciler.domain.models import LatenessStatus
from billing_reconciler.infrastructure.database.models import Account
from billing_reconciler.services.accounts import AccountService, RefreshResult

router = APIRouter()


def to_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=str(account.id),
        account_number=account.account_number,
        name=account.name,
        email=account.email,
        region_code=account.region_code,
        invoicing_customer_id=account.invoicing_customer_id,
        service_start_date=account.service_start_date,
        billing_day_of_month=account.billing_day_of_month,
        billing_cadence=account.billing_cadence,
        next_billing_date=account.next_billing_date,
        account_balance_cents=account.account_balance_cents,
        payment_method=account.payment_method,
        last_payment_date=account.last_payment_date,
        last_payment_amount_cents=account.last_payment_amount_cents,
        is_late=account.is_late,
        grace_period_days=account.grace_period_days,
        late_payment_count=account.late_payment_count,
        last_late_payment_date=account.last_late_payment_date,
        total_late_fees_cents=account.total_late_fees_cents,
        late_payment_history=[LatePaymentSchema(**entry) for entry in account.late_payment_history or []],
    )


def to_refresh_response(result: RefreshResult) -> RefreshResponse:
    return RefreshResponse(
        account_id=str(result.account_id),
        overdue_records=result.overdue_records,
        is_late=result.is_late,
        next_billing_date=result.next_billing_date,
    )


@router.post("/accounts", response_model=AccountResponse, status_code=201)
def create_account(
    request_body: AccountCreate,
    request: Request,
    service: AccountService = Depends(get_account_service),
):
    """Onboard an account: generated account number, zero balance, first billing date"""
    try:
        account = service.onboard(**request_body.model_dump())
    except DomainException as e:
        raise http_error(e, get_request_id(request))
    return to_response(account)


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(account_id: str, request: Request, service: AccountService = Depends(get_account_service)):
    try:
        account = service.get(parse_id(account_id, "account"))
    except DomainException as e:
        raise http_error(e, get_request_id(request))
    return to_response(account)


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: str,
    request_body: AccountUpdate,
    request: Request,
    service: AccountService = Depends(get_account_service),
):
    """
    Direct account edit.

    Changing the billing day, cadence or service start date moves the next
    billing date. The balance can only change through billing records.
    """
    account_uuid = parse_id(account_id, "account")
    try:
        account = service.update(account_uuid, request_body.model_dump(exclude_unset=True))
    except DomainException as e:
        raise http_error(e, get_request_id(request))
    return to_response(account)


@router.post("/accounts/refresh", response_model=RefreshSweepResponse)
def refresh_all_accounts(request: Request, service: AccountService = Depends(get_account_service)):
    """Time-based sweep over every account, meant for a scheduler"""
    try:
        results = service.refresh_all()
    except DomainException as e:
        raise http_error(e, get_request_id(request))
    return RefreshSweepResponse(
        accounts_refreshed=len(results),
        overdue_records=sum(r.overdue_records for r in results),
        late_accounts=sum(1 for r in results if r.is_late == LatenessStatus.LATE),
    )


@router.post("/accounts/{account_id}/refresh", response_model=RefreshResponse)
def refresh_account(account_id: str, request: Request, service: AccountService = Depends(get_account_service)):
    account_uuid = parse_id(account_id, "account")
    try:
        result = service.refresh_account(account_uuid)
    except DomainException as e:
        raise http_error(e, get_request_id(request))
    return to_refresh_response(result)
