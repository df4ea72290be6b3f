"""POST /v1/invoices - region-numbered invoice documents"""

from fastapi import APIRouter, Depends, Request

from billing_reconciler.api.dependencies import get_invoice_service, get_request_id, parse_id
from billing_reconciler.api.errors import http_error
from billing_reconciler.api.v1.schemas import InvoiceCreate, InvoiceResponse
from billing_reconciler.domain.exceptions import DomainException
from billing_reconciler.services.invoices import InvoiceService

router = APIRouter()


@router.post("/invoices", response_model=InvoiceResponse, status_code=201)
def create_invoice(
    request_body: InvoiceCreate,
    request: Request,
    service: InvoiceService = Depends(get_invoice_service),
):
    """Create an invoice numbered per region, e.g. BK-000001, or INV-000001 without one"""
    account_id = parse_id(request_body.account_id, "account")
    try:
        invoice = service.create(
            account_id,
            request_body.total_cents,
            description=request_body.description,
            region_code=request_body.region_code,
        )
    except DomainException as e:
        raise http_error(e, get_request_id(request))

    return InvoiceResponse(
        id=str(invoice.id),
        invoice_number=invoice.invoice_number,
        account_id=str(invoice.account_id),
        total_cents=invoice.total_cents,
        status=invoice.status,
        description=invoice.description,
    )
