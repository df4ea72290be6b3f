"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from billing_reconciler.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_reconciliation(
    request_id: Optional[str],
    account_id: str,
    billing_number: str,
    operation: str,
    balance_before_cents: int,
    balance_after_cents: int,
    is_late: str,
    replayed: bool = False,
    attempts: int = 1,
) -> None:
    """Log structured reconciliation outcome for auditing balance movements"""
    logging.getLogger("billing_reconciler.reconciler").info(
        "Reconciliation completed",
        extra={
            "request_id": request_id,
            "account_id": account_id,
            "billing_number": billing_number,
            "step": "reconciliation_complete",
            "operation": operation,
            "balance_before_cents": balance_before_cents,
            "balance_after_cents": balance_after_cents,
            "is_late": is_late,
            "replayed": replayed,
            "attempts": attempts,
        },
    )


def log_notification(
    billing_number: str,
    account_number: str,
    step: str,
    outcome: str,
    invoice_id: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log one step of the post-commit invoice/email side effect"""
    log = logging.getLogger("billing_reconciler.notifications")
    extra = {
        "billing_number": billing_number,
        "account_number": account_number,
        "step": step,
        "outcome": outcome,
        "invoice_id": invoice_id,
    }
    if error is not None:
        log.error(f"Notification step {step} failed: {error}", extra=extra)
    else:
        log.info(f"Notification step {step} {outcome}", extra=extra)
