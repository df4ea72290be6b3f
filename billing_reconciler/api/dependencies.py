"""Dependency injection for FastAPI endpoints"""

import uuid

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from billing_reconciler.infrastructure.clients.email import EmailClient
from billing_reconciler.infrastructure.clients.invoicing import InvoicingClient
from billing_reconciler.infrastructure.database.session import get_db, get_session_factory
from billing_reconciler.services.accounts import AccountService
from billing_reconciler.services.invoices import InvoiceService
from billing_reconciler.services.notifications import NotificationDispatcher, make_invoice_recorder
from billing_reconciler.services.reconciler import BillingReconciler


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def parse_id(value: str, kind: str) -> uuid.UUID:
    """Path and body ids arrive as strings; malformed ones are a 400"""
    try:
        return uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {kind} ID format")


def get_invoicing_client() -> InvoicingClient:
    """Provide invoicing provider client instance"""
    return InvoicingClient()


def get_email_client() -> EmailClient:
    """Provide email provider client instance"""
    return EmailClient()


def get_dispatcher(
    invoicing: InvoicingClient = Depends(get_invoicing_client),
    email: EmailClient = Depends(get_email_client),
) -> NotificationDispatcher:
    """Notification dispatcher; runs after the request's session is gone, so it opens its own"""
    return NotificationDispatcher(invoicing, email, invoice_recorder=make_invoice_recorder(get_session_factory()))


def get_reconciler(request: Request, db: Session = Depends(get_db)) -> BillingReconciler:
    return BillingReconciler(db, request_id=get_request_id(request))


def get_account_service(db: Session = Depends(get_db)) -> AccountService:
    return AccountService(db)


def get_invoice_service(db: Session = Depends(get_db)) -> InvoiceService:
    return InvoiceService(db)
