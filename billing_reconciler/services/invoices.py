"""Region-numbered invoice documents"""

import logging
import uuid
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from billing_reconciler.domain.exceptions import NotFoundError, PersistenceError, ValidationError
from billing_reconciler.infrastructure.database.models import Invoice
from billing_reconciler.infrastructure.database.repositories import AccountRepository, InvoiceRepository
from billing_reconciler.services.identifiers import IdentifierGenerator

logger = logging.getLogger(__name__)


class InvoiceService:
    def __init__(self, db: Session):
        self.db = db
        self.accounts = AccountRepository(db)
        self.invoices = InvoiceRepository(db)

    def create(
        self,
        account_id: uuid.UUID,
        total_cents: int,
        description: Optional[str] = None,
        region_code: Optional[str] = None,
    ) -> Invoice:
        """Number an invoice under the account's region (or the given one) and store it"""
        if total_cents < 0:
            raise ValidationError(f"total_cents must be >= 0, got {total_cents}")

        account = self.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")

        try:
            number = IdentifierGenerator(self.db).next_invoice_number(region_code or account.region_code)
            invoice = self.invoices.create(
                invoice_number=number,
                account_id=account.id,
                total_cents=total_cents,
                description=description,
            )
            self.db.commit()
        except ValidationError:
            self.db.rollback()
            raise
        except IntegrityError as e:
            # Lost the race to seed a new region counter
            self.db.rollback()
            raise PersistenceError(f"Invoice number collision, retry: {e.orig}") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Could not create invoice: {e}") from e

        logger.info(f"Created invoice {invoice.invoice_number}", extra={"account_id": str(account_id)})
        return invoice
