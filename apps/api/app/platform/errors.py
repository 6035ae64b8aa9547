from __future__ import annotations

from enum import StrEnum
from typing import Any


class TokenErrorKind(StrEnum):
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"


class DomainError(Exception):
    """Base class for errors raised by the lifecycle services.

    Each subclass carries the HTTP status the API boundary maps it to and a
    stable machine-readable ``code``.
    """

    status_code = 400
    code = "domain_error"
    kind: TokenErrorKind | None = None

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(DomainError):
    status_code = 400
    code = "validation_error"


class NotFoundError(DomainError):
    status_code = 404
    code = "not_found"
    kind = TokenErrorKind.NOT_FOUND


class BusinessRuleError(DomainError):
    status_code = 409
    code = "business_rule_violation"


class InvalidStateError(BusinessRuleError):
    """Token action attempted against an entity whose status does not allow it."""

    status_code = 400
    code = "invalid_state"
    kind = TokenErrorKind.INVALID_STATE


class ConflictError(DomainError):
    status_code = 409
    code = "conflict"


class ExpiredError(DomainError):
    status_code = 410
    code = "expired"
    kind = TokenErrorKind.EXPIRED
