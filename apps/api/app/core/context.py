from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_tenant_id, set_tenant_id
from app.core.config import get_settings


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    tenant_id: str | None
    client_ip: str | None
    user_agent: str | None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None)
        tenant_id = request.headers.get("x-tenant-id") or None
        request.state.context = RequestContext(
            request_id=correlation_id or "",
            correlation_id=correlation_id or "",
            user_id=None,
            tenant_id=tenant_id,
            client_ip=resolve_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        token = set_tenant_id(tenant_id)
        try:
            response = await call_next(request)
        finally:
            reset_tenant_id(token)
        response.headers["x-request-id"] = request.state.context.request_id
        return response


def resolve_client_ip(request: Request) -> str | None:
    """Return the caller's address.

    X-Forwarded-For is only honoured when the connecting peer is a trusted
    proxy, and then the nearest hop that is not itself a trusted proxy is used.
    """
    peer = request.client.host if request.client else None
    trusted = get_settings().trusted_proxy_hosts
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded or peer is None or peer not in trusted:
        return peer

    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return hops[0] if hops else peer
