"""Domain exception to HTTP status mapping"""

import logging

from fastapi import HTTPException

from billing_reconciler.domain.exceptions import (
    DomainException,
    DuplicateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific first
STATUS_BY_ERROR = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (DuplicateError, 409),
    (PersistenceError, 503),
)


def http_error(error: DomainException, request_id: str) -> HTTPException:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            break
    else:
        status_code = 500

    if status_code >= 500:
        logger.error(f"{type(error).__name__}: {error}", extra={"request_id": request_id})
        detail = "Storage temporarily unavailable, retry" if status_code == 503 else "Internal server error"
    else:
        logger.warning(f"{type(error).__name__}: {error}", extra={"request_id": request_id})
        detail = str(error)
    return HTTPException(status_code=status_code, detail=detail)
