from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

import requests
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.config import settings
from control_plane.core.context import set_current_tenant_id, set_current_user_id
from control_plane.core.db import get_db_session
from control_plane.models.membership import ADMIN_ROLES, TenantMembership
from control_plane.models.tenant import Tenant
from control_plane.models.user import User

bearer_scheme = HTTPBearer(auto_error=True)


@dataclass(slots=True)
class AuthContext:
    tenant_id: UUID
    user_id: UUID
    subject: str
    claims: dict[str, Any] = field(default_factory=dict)


class JwksCache:
    def __init__(self, ttl_seconds: int = 300) -> None:
        self.ttl_seconds = ttl_seconds
        self._jwks: dict | None = None
        self._fetched_at = 0.0

    def get(self, url: str) -> dict:
        now = time.time()
        if self._jwks is None or (now - self._fetched_at) > self.ttl_seconds:
            response = requests.get(url, timeout=5)
            response.raise_for_status()
            self._jwks = response.json()
            self._fetched_at = now
        return self._jwks


jwks_cache = JwksCache()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _forbidden(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def _get_signing_key(token: str) -> dict:
    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise _unauthorized("Invalid authentication header") from exc

    kid = unverified_header.get("kid")
    if not kid:
        raise _unauthorized("JWT is missing key id")

    try:
        jwks = jwks_cache.get(settings.identity_jwks_url)
    except requests.RequestException as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Identity provider keys are unavailable",
        ) from exc

    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key
    raise _unauthorized("No matching signing key found")


def decode_identity_token(token: str) -> dict[str, Any]:
    key = _get_signing_key(token)
    try:
        return jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            issuer=settings.identity_issuer,
            audience=settings.identity_audience or None,
            options={"verify_aud": bool(settings.identity_audience)},
        )
    except JWTError as exc:
        raise _unauthorized("Invalid or expired token") from exc


def _as_uuid(value: object) -> UUID | None:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


async def require_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_db_session),
) -> AuthContext:
    claims = decode_identity_token(credentials.credentials)

    subject = claims.get("sub")
    tenant_ref = claims.get(settings.identity_tenant_claim)
    if not subject or not tenant_ref:
        raise _forbidden("Token is missing required claims")

    tenant_clauses = [Tenant.slug == str(tenant_ref)]
    if (tenant_uuid := _as_uuid(tenant_ref)) is not None:
        tenant_clauses.append(Tenant.id == tenant_uuid)
    tenant = await session.scalar(select(Tenant).where(or_(*tenant_clauses)))
    if tenant is None:
        raise _forbidden("Tenant is not provisioned")

    user_id = _as_uuid(subject)
    if user_id is None or await session.get(User, user_id) is None:
        email = claims.get("email")
        user_id = (
            await session.scalar(select(User.id).where(User.email == str(email).strip().lower()))
            if email
            else None
        )
    if user_id is None:
        raise _forbidden("User is not registered")

    request.state.tenant_id = tenant.id
    request.state.user_id = user_id
    request.state.auth_claims = claims
    set_current_tenant_id(tenant.id)
    set_current_user_id(user_id)

    return AuthContext(tenant_id=tenant.id, user_id=user_id, subject=str(subject), claims=claims)


async def require_tenant_admin(
    auth: AuthContext = Depends(require_auth_context),
    session: AsyncSession = Depends(get_db_session),
) -> AuthContext:
    role = await session.scalar(
        select(TenantMembership.role).where(
            TenantMembership.tenant_id == auth.tenant_id,
            TenantMembership.user_id == auth.user_id,
            TenantMembership.status == "active",
        )
    )
    if role not in ADMIN_ROLES:
        raise _forbidden("Tenant admin role required")
    return auth


async def require_platform_admin(auth: AuthContext = Depends(require_auth_context)) -> AuthContext:
    if auth.subject not in settings.platform_admin_subjects():
        raise _forbidden("Platform admin role required")
    return auth
