from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Callable
from datetime import date
from typing import Any, NoReturn

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.business.revenue.models import RevenueAgreement, RevenueQuote
from app.business.revenue.transitions import AGREEMENT_IN_FORCE_STATUSES, QUOTE_ACTIONABLE_STATUSES, AgreementStatus, QuoteStatus
from app.core.cache import TTLCache
from app.core.config import get_settings
from app.metrics import observe_token_cache_hit, observe_token_cache_miss, observe_token_failure
from app.platform.errors import DomainError, ExpiredError, InvalidStateError, NotFoundError


logger = logging.getLogger("app.revenue.tokens")

_TOKEN_RE = re.compile(r"^[0-9a-f]{32,128}$")

QUOTE_TOKEN_ACTIONS: dict[str, frozenset[str]] = {
    "view": frozenset(
        {QuoteStatus.SENT, QuoteStatus.VIEWED, QuoteStatus.ACCEPTED, QuoteStatus.REJECTED, QuoteStatus.CONVERTED}
    ),
    "accept": QUOTE_ACTIONABLE_STATUSES,
    "reject": QUOTE_ACTIONABLE_STATUSES,
}

AGREEMENT_TOKEN_ACTIONS: dict[str, frozenset[str]] = {
    "view": frozenset({AgreementStatus.PENDING_SIGNATURE, AgreementStatus.ACTIVE, AgreementStatus.TERMINATED}),
    "sign": frozenset({AgreementStatus.PENDING_SIGNATURE}),
}


def issue_token(nbytes: int | None = None) -> str:
    """Return an opaque hex bearer token (64 characters with the default 32 bytes)."""
    return secrets.token_hex(nbytes or get_settings().public_token_bytes)


class TokenAuthority:
    """Resolves public tokens to quotes and agreements for counterparty actions.

    Failures come in three kinds so the API can answer 404, 410 or 400:
    unknown or deleted entity, entity past its validity window, and an action
    that the entity's current status does not allow. Only the token to id
    mapping is cached; status and validity are always read fresh.
    """

    def __init__(self, cache: TTLCache, *, today: Callable[[], date] = date.today) -> None:
        self.cache = cache
        self._today = today

    def resolve_quote(self, session: Session, token: str, action: str) -> RevenueQuote:
        quote = self._lookup(session, RevenueQuote, "quote", token)
        allowed = QUOTE_TOKEN_ACTIONS[action]

        if quote.status == QuoteStatus.EXPIRED or (
            quote.status in QUOTE_ACTIONABLE_STATUSES
            and quote.valid_until is not None
            and quote.valid_until < self._today()
        ):
            self._fail("quote", ExpiredError("this quote has expired", code="token_expired"))
        if quote.status not in allowed:
            self._fail(
                "quote",
                InvalidStateError(
                    f"quote cannot be used to {action} while {quote.status}",
                    details={"status": quote.status, "action": action},
                ),
            )
        return quote

    def resolve_agreement(self, session: Session, token: str, action: str) -> RevenueAgreement:
        agreement = self._lookup(session, RevenueAgreement, "agreement", token)
        allowed = AGREEMENT_TOKEN_ACTIONS[action]

        if agreement.status == AgreementStatus.EXPIRED or (
            agreement.status in AGREEMENT_IN_FORCE_STATUSES
            and agreement.expiry_date is not None
            and agreement.expiry_date < self._today()
        ):
            self._fail("agreement", ExpiredError("this agreement has expired", code="token_expired"))
        if agreement.status not in allowed:
            self._fail(
                "agreement",
                InvalidStateError(
                    f"agreement cannot be used to {action} while {agreement.status}",
                    details={"status": agreement.status, "action": action},
                ),
            )
        return agreement

    def _lookup(self, session: Session, model: Any, entity: str, token: str) -> Any:
        if not _TOKEN_RE.match(token or ""):
            self._fail(entity, NotFoundError(f"{entity} not found", code="token_not_found"))

        cache_key = (entity, token)
        entity_id = self.cache.get(cache_key)
        if entity_id is not None:
            observe_token_cache_hit(entity)
            record = session.scalar(select(model).where(model.id == entity_id))
        else:
            observe_token_cache_miss(entity)
            record = session.scalar(select(model).where(model.public_token == token))
            if record is not None:
                self.cache.set(cache_key, record.id)

        if record is None or record.deleted_at is not None:
            self._fail(entity, NotFoundError(f"{entity} not found", code="token_not_found"))
        return record

    @staticmethod
    def _fail(entity: str, error: DomainError) -> NoReturn:
        observe_token_failure(entity, str(error.kind))
        logger.info("token.rejected", extra={"entity_type": entity, "kind": str(error.kind)})
        raise error


settings = get_settings()
token_authority = TokenAuthority(
    TTLCache(settings.token_cache_ttl_seconds, max_entries=settings.token_cache_max_entries),
)
