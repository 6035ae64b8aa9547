from app.platform.errors import (
    BusinessRuleError,
    ConflictError,
    DomainError,
    ExpiredError,
    InvalidStateError,
    NotFoundError,
    TokenErrorKind,
    ValidationError,
)

__all__ = [
    "BusinessRuleError",
    "ConflictError",
    "DomainError",
    "ExpiredError",
    "InvalidStateError",
    "NotFoundError",
    "TokenErrorKind",
    "ValidationError",
]
