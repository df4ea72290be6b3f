"""Invoice notification content"""

from dataclasses import dataclass
from datetime import date
from html import escape
from typing import Optional

from billing_reconciler.domain.models import AccountSnapshot, BillingRecordSnapshot


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str


def format_cents(amount_cents: int) -> str:
    """12345 -> $123.45"""
    sign = "-" if amount_cents < 0 else ""
    dollars, cents = divmod(abs(amount_cents), 100)
    return f"{sign}${dollars:,}.{cents:02d}"


def format_long_date(value: Optional[date]) -> str:
    if value is None:
        return "N/A"
    return f"{value:%B} {value.day}, {value.year}"


def days_until_due(due_date: date, reference_date: date) -> int:
    """Whole days from reference_date to due_date, never negative"""
    return max(0, (due_date - reference_date).days)


def render_invoice_email(
    account: AccountSnapshot,
    record: BillingRecordSnapshot,
    payment_link: Optional[str],
    company_name: str,
) -> EmailMessage:
    """Build the invoice notification for a new billing record"""
    amount = format_cents(record.amount_cents)
    billing_date = format_long_date(record.billing_date)
    due_date = format_long_date(record.due_date)
    customer = account.name or "Valued Customer"

    subject = f"Invoice {record.billing_number} - {amount} Due {due_date}"

    rows = [
        ("Invoice Number", record.billing_number),
        ("Account Number", account.account_number),
        ("Billing Date", billing_date),
        ("Due Date", due_date),
    ]
    if record.description:
        rows.append(("Description", record.description))

    html_rows = "\n".join(
        f'<div class="info-row"><span class="info-label">{escape(label)}:</span> <span>{escape(value)}</span></div>'
        for label, value in rows
    )
    if payment_link:
        pay_html = (
            f'<p style="text-align: center;"><a href="{escape(payment_link, quote=True)}" class="button">'
            "Pay Invoice Online</a></p>"
            "<p>You can pay securely online by clicking the button above, "
            "or visit your account portal to view and pay your invoice.</p>"
        )
        pay_text = (
            f"Pay Invoice Online: {payment_link}\n\n"
            "You can pay securely online using the link above, "
            "or visit your account portal to view and pay your invoice."
        )
    else:
        pay_html = "<p>Please contact us to arrange payment or visit your account portal to view your invoice.</p>"
        pay_text = "Please contact us to arrange payment or visit your account portal to view your invoice."

    html = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body>
  <div class="header"><h1>{escape(company_name)}</h1><p>Invoice Notification</p></div>
  <div class="content">
    <p>Dear {escape(customer)},</p>
    <p>Your invoice has been generated for your service.</p>
    <div class="invoice-details">
      <h2>Invoice Details</h2>
      {html_rows}
      <div class="amount">Amount Due: {escape(amount)}</div>
    </div>
    <p>Please make payment by the due date to avoid any late fees or service interruptions.</p>
    {pay_html}
    <div class="footer"><p><strong>{escape(company_name)}</strong></p><p>Thank you for your business!</p></div>
  </div>
</body>
</html>"""

    text_rows = "\n".join(f"- {label}: {value}" for label, value in rows)
    text = (
        f"{company_name} - Invoice Notification\n\n"
        f"Dear {customer},\n\n"
        "Your invoice has been generated for your service.\n\n"
        f"Invoice Details:\n{text_rows}\n\n"
        f"Amount Due: {amount}\n\n"
        "Please make payment by the due date to avoid any late fees or service interruptions.\n\n"
        f"{pay_text}\n\n"
        f"Thank you for your business!\n\n{company_name}"
    )

    return EmailMessage(to=account.email or "", subject=subject, html=html, text=text)
