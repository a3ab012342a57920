"""Composable request stages run before each handler.

A route declares its stages in order, e.g.::

    ctx: RequestContext = Depends(
        pipeline(resolve_tenant(), rate_limit("domains"), authenticate(), authorize(permissions=["users:read"]))
    )

Each stage receives the request, the context built so far and the runtime,
and either enriches the context or raises a ``ServiceError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from fastapi import Request

from tessera.logging import get_correlation_id, get_logger
from tessera.service.errors import AuthenticationError, ServerError
from tessera.service.runtime import Runtime, get_runtime
from tessera.storage.models import Domain

logger = get_logger(__name__)


@dataclass
class Principal:
    user_id: str
    domain_id: str
    email: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    claims: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RequestContext:
    request_id: Optional[str]
    client_ip: Optional[str]
    user_agent: Optional[str]
    domain: Optional[Domain] = None
    principal: Optional[Principal] = None

    @property
    def domain_id(self) -> str:
        if self.domain is None:
            raise ServerError("domain context not resolved")
        return self.domain.id

    @property
    def user_id(self) -> str:
        if self.principal is None:
            raise AuthenticationError()
        return self.principal.user_id


Stage = Callable[[Request, RequestContext, Runtime], Awaitable[None]]


def client_ip(request: Request, *, trust_forwarded_for: bool = False) -> Optional[str]:
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


async def _body_domain_id(request: Request) -> Optional[str]:
    if request.method in ("GET", "HEAD", "DELETE"):
        return None
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        body = await request.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("domain_id"), str):
        return body["domain_id"]
    return None


def resolve_tenant() -> Stage:
    """Header ``X-Domain-ID``, then ``domain_id`` query, then body, then ``X-Domain-Slug``."""

    async def stage(request: Request, ctx: RequestContext, runtime: Runtime) -> None:
        domain_id = (
            request.headers.get("X-Domain-ID")
            or request.query_params.get("domain_id")
            or await _body_domain_id(request)
        )
        slug = None
        if not domain_id:
            slug = request.headers.get("X-Domain-Slug") or request.query_params.get("domain_slug")
        ctx.domain = runtime.domains.resolve_domain(domain_id=domain_id, slug=slug)

    return stage


def rate_limit(profile: str, endpoint: Optional[str] = None) -> Stage:
    async def stage(request: Request, ctx: RequestContext, runtime: Runtime) -> None:
        await runtime.limiter.enforce(
            profile,
            domain_id=ctx.domain.id if ctx.domain else None,
            endpoint=endpoint or request.url.path,
            client_ip=ctx.client_ip,
        )

    return stage


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def authenticate() -> Stage:
    async def stage(request: Request, ctx: RequestContext, runtime: Runtime) -> None:
        token = _extract_bearer(request.headers.get("Authorization"))
        if not token:
            raise AuthenticationError("Bearer token required")
        claims = runtime.tokens.decode_access_token(
            token, ctx.domain.id if ctx.domain else None
        )
        ctx.principal = Principal(
            user_id=str(claims["sub"]),
            domain_id=str(claims.get("domain_id")),
            email=claims.get("email"),
            roles=list(claims.get("roles") or []),
            claims=claims,
        )

    return stage


def authorize(
    *,
    roles: Iterable[str] = (),
    permissions: Iterable[str] = (),
    allow_self: bool = False,
) -> Stage:
    """Require a role/permission; ``allow_self`` lets a user act on their own ``user_id`` path param."""
    roles = tuple(roles)
    permissions = tuple(permissions)

    async def stage(request: Request, ctx: RequestContext, runtime: Runtime) -> None:
        if allow_self and request.path_params.get("user_id") == ctx.user_id:
            return
        runtime.rbac.require_any(
            ctx.domain_id, ctx.user_id, roles=roles, permissions=permissions
        )

    return stage


def pipeline(*stages: Stage) -> Callable[[Request], Awaitable[RequestContext]]:
    """Build a FastAPI dependency that runs ``stages`` in order."""

    async def dependency(request: Request) -> RequestContext:
        runtime = get_runtime()
        ctx = RequestContext(
            request_id=get_correlation_id(),
            client_ip=client_ip(request, trust_forwarded_for=runtime.settings.trust_forwarded_for),
            user_agent=request.headers.get("User-Agent"),
        )
        for stage in stages:
            await stage(request, ctx, runtime)
        return ctx

    return dependency
