"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class ValidationError(DomainException):
    """Mutation input is malformed; rejected before any state change"""

    pass


class NotFoundError(DomainException):
    """Referenced account or billing record does not exist"""

    pass


class DuplicateError(DomainException):
    """Unique account data (email, account number) is already taken"""

    pass


class PersistenceError(DomainException):
    """Storage failure; the whole reconciliation was rolled back and may be retried"""

    pass


class ConcurrencyConflictError(PersistenceError):
    """Account kept changing underneath us after all retry attempts"""

    pass


class ExternalDependencyError(DomainException):
    """Invoicing or email provider returned an error or is unavailable"""

    pass
