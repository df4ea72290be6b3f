"""Human-readable sequential identifiers backed by transactional counters"""

import re
from typing import Callable, Optional

from sqlalchemy.orm import Session

from billing_reconciler.domain.exceptions import ValidationError
from billing_reconciler.domain.lifecycle import BILLING_NUMBER_PREFIX
from billing_reconciler.infrastructure.database.repositories import (
    AccountRepository,
    BillingRecordRepository,
    InvoiceRepository,
    SequenceRepository,
)

ACCOUNT_NUMBER_PREFIX = "ACCT-"
INVOICE_NUMBER_PREFIX = "INV-"
IDENTIFIER_WIDTH = 6

_REGION_CODE_RE = re.compile(r"^[A-Z0-9]{1,10}$")


def format_identifier(prefix: str, value: int, width: int = IDENTIFIER_WIDTH) -> str:
    """BILL- + 42 -> BILL-000042"""
    return f"{prefix}{value:0{width}d}"


def normalize_region_code(region_code: str) -> str:
    code = region_code.strip().upper()
    if not _REGION_CODE_RE.match(code):
        raise ValidationError(f"invalid region code: {region_code!r}")
    return code


class IdentifierGenerator:
    """
    Issues identifiers inside the caller's transaction.

    Numbers come from a per-scope counter, so two concurrent callers never get
    the same value; a rolled back transaction gives its number back. The first
    use of a scope seeds the counter with the identifiers already issued under
    that prefix.
    """

    def __init__(self, db: Session):
        self.db = db
        self.sequences = SequenceRepository(db)

    def next_sequential(self, scope: str, prefix: str, seed: Optional[Callable[[], int]] = None) -> str:
        return format_identifier(prefix, self.sequences.next_value(scope, seed=seed))

    def next_billing_number(self) -> str:
        records = BillingRecordRepository(self.db)
        return self.next_sequential(
            "billing-record",
            BILLING_NUMBER_PREFIX,
            seed=lambda: records.count_with_prefix(BILLING_NUMBER_PREFIX),
        )

    def next_account_number(self) -> str:
        """
        Next free account number.

        Callers may onboard with their own account number, so a number the
        counter has not reached yet can already be taken; those are skipped.
        """
        accounts = AccountRepository(self.db)
        while True:
            number = self.next_sequential(
                "account",
                ACCOUNT_NUMBER_PREFIX,
                seed=lambda: accounts.count_with_prefix(ACCOUNT_NUMBER_PREFIX),
            )
            if accounts.get_by_account_number(number) is None:
                return number

    def next_invoice_number(self, region_code: Optional[str] = None) -> str:
        """Invoice numbers count per region (BK-000001), or collection-wide (INV-000001)"""
        invoices = InvoiceRepository(self.db)
        if region_code:
            code = normalize_region_code(region_code)
            prefix = f"{code}-"
            scope = f"invoice:{code}"
        else:
            prefix = INVOICE_NUMBER_PREFIX
            scope = "invoice"
        return self.next_sequential(scope, prefix, seed=lambda: invoices.count_with_prefix(prefix))
