"""POST /v1/payments/confirmations - external payment confirmations"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from billing_reconciler.api.dependencies import get_reconciler, get_request_id, parse_id
from billing_reconciler.api.errors import http_error
from billing_reconciler.api.v1.billing_records import to_response
from billing_reconciler.api.v1.schemas import PaymentConfirmation, ReconciliationResponse
from billing_reconciler.domain.exceptions import DomainException
from billing_reconciler.services.reconciler import BillingReconciler

router = APIRouter()


@router.post("/payments/confirmations", response_model=ReconciliationResponse)
def confirm_payment(
    request_body: PaymentConfirmation,
    request: Request,
    idempotency_key: Optional[str] = Header(None),
    reconciler: BillingReconciler = Depends(get_reconciler),
):
    """
    Mark a billing record paid on word from the payment provider.

    The provider retries deliveries, so callers should send an
    Idempotency-Key; a repeated confirmation is answered from the log.
    """
    request_id = get_request_id(request)
    record_id = None
    if request_body.billing_record_id:
        record_id = parse_id(request_body.billing_record_id, "billing record")

    try:
        result = reconciler.confirm_payment(
            record_id=record_id,
            invoice_id=request_body.invoice_id,
            amount_cents=request_body.amount_cents,
            paid_date=request_body.paid_date,
            idempotency_key=idempotency_key,
        )
    except DomainException as e:
        raise http_error(e, request_id)

    return to_response(result)
