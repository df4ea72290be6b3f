"""Post-commit invoice creation and email for new billing records"""

import logging
import uuid
from datetime import date
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from billing_reconciler.config import settings
from billing_reconciler.domain.models import AccountSnapshot, BillingRecordSnapshot
from billing_reconciler.domain.notifications import days_until_due, render_invoice_email
from billing_reconciler.infrastructure.clients.email import EmailClient
from billing_reconciler.infrastructure.clients.invoicing import InvoicingClient
from billing_reconciler.infrastructure.database.repositories import BillingRecordRepository
from billing_reconciler.infrastructure.observability.logging import log_notification
from billing_reconciler.infrastructure.observability.metrics import notification_failure_counter
from billing_reconciler.utils.date_utils import today

logger = logging.getLogger(__name__)

InvoiceRecorder = Callable[[uuid.UUID, str], None]


def make_invoice_recorder(session_factory: sessionmaker) -> InvoiceRecorder:
    """Persist an external invoice id on its billing record in a fresh session"""

    def record(billing_record_id: uuid.UUID, invoice_id: str) -> None:
        db = session_factory()
        try:
            if not BillingRecordRepository(db).attach_invoice(billing_record_id, invoice_id):
                logger.warning(
                    "Billing record disappeared before invoice could be attached",
                    extra={"billing_record_id": str(billing_record_id), "invoice_id": invoice_id},
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    return record


class NotificationDispatcher:
    """
    Fire-and-forget side effect of a committed billing record creation.

    Every step is isolated: a failed invoice still gets an email without a
    payment link, and nothing here ever raises into the caller.
    """

    def __init__(
        self,
        invoicing: InvoicingClient,
        email: EmailClient,
        invoice_recorder: Optional[InvoiceRecorder] = None,
        company_name: Optional[str] = None,
        clock: Callable[[], date] = today,
    ):
        self.invoicing = invoicing
        self.email = email
        self.invoice_recorder = invoice_recorder
        self.company_name = company_name or settings.company_name
        self.clock = clock

    def _failed(self, step: str, account: AccountSnapshot, record: BillingRecordSnapshot, error: Exception) -> None:
        notification_failure_counter.labels(step=step).inc()
        log_notification(record.billing_number, account.account_number, step, "failed", error=str(error))

    async def _create_invoice(self, account: AccountSnapshot, record: BillingRecordSnapshot) -> Optional[str]:
        if not account.invoicing_customer_id:
            logger.warning(
                f"Account {account.account_number} has no invoicing customer - skipping invoice",
                extra={"billing_number": record.billing_number},
            )
            return None
        try:
            invoice_id = await self.invoicing.create_invoice(
                customer_ref=account.invoicing_customer_id,
                amount_cents=record.amount_cents,
                description=record.description or f"Invoice {record.billing_number}",
                due_days=days_until_due(record.due_date, self.clock()),
                metadata={
                    "billingNumber": record.billing_number,
                    "accountNumber": account.account_number,
                    "billingRecordId": str(record.id),
                },
            )
        except Exception as e:
            self._failed("invoice", account, record, e)
            return None

        if invoice_id:
            log_notification(record.billing_number, account.account_number, "invoice", "created", invoice_id=invoice_id)
        return invoice_id

    async def _payment_link(self, account: AccountSnapshot, record: BillingRecordSnapshot, invoice_id: str) -> Optional[str]:
        try:
            return await self.invoicing.get_hosted_payment_link(invoice_id)
        except Exception as e:
            self._failed("payment_link", account, record, e)
            return None

    def _attach_invoice(self, account: AccountSnapshot, record: BillingRecordSnapshot, invoice_id: str) -> None:
        if self.invoice_recorder is None:
            return
        try:
            self.invoice_recorder(record.id, invoice_id)
        except Exception as e:
            self._failed("attach_invoice", account, record, e)

    async def notify(self, account: AccountSnapshot, record: BillingRecordSnapshot) -> Optional[str]:
        """
        Create the external invoice and email the account holder.

        Flow:
        1. Create invoice (skipped when not configured or no customer reference)
        2. Attach invoice id to the billing record
        3. Fetch hosted payment link
        4. Send invoice email, with the link when there is one

        Returns:
            External invoice id, if one was created
        """
        invoice_id = await self._create_invoice(account, record)

        payment_link = None
        if invoice_id:
            self._attach_invoice(account, record, invoice_id)
            payment_link = await self._payment_link(account, record, invoice_id)

        if not account.email:
            logger.warning(f"Account {account.account_number} has no email address - skipping invoice email")
            return invoice_id

        message = render_invoice_email(account, record, payment_link, self.company_name)
        try:
            await self.email.send(message.to, message.subject, message.html, message.text)
            log_notification(record.billing_number, account.account_number, "email", "sent", invoice_id=invoice_id)
        except Exception as e:
            self._failed("email", account, record, e)

        return invoice_id
