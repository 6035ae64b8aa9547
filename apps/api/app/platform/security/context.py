from __future__ import annotations

from dataclasses import dataclass, field

from app.platform.errors import ValidationError

SYSTEM_ACTOR = "system"


@dataclass(slots=True)
class AuthContext:
    """Caller identity and tenant scope passed to every lifecycle operation."""

    user_id: str
    tenant_id: str | None = None
    correlation_id: str | None = None
    roles: list[str] = field(default_factory=list)
    client_ip: str | None = None

    def require_tenant(self) -> str:
        tenant_id = (self.tenant_id or "").strip()
        if not tenant_id:
            raise ValidationError("tenant id is required", code="tenant_required")
        return tenant_id

    @classmethod
    def for_public(cls, tenant_id: str, *, actor: str, correlation_id: str | None = None, client_ip: str | None = None) -> AuthContext:
        return cls(user_id=f"public:{actor}", tenant_id=tenant_id, correlation_id=correlation_id, client_ip=client_ip)

    @classmethod
    def for_system(cls, tenant_id: str, *, correlation_id: str | None = None) -> AuthContext:
        return cls(user_id=SYSTEM_ACTOR, tenant_id=tenant_id, correlation_id=correlation_id)
