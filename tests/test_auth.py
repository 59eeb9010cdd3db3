from __future__ import annotations

from types import SimpleNamespace
from uuid import uuid4

import pytest
import requests
from fastapi import HTTPException
from jose import JWTError

from control_plane.core.auth import (
    AuthContext,
    JwksCache,
    _get_signing_key,
    decode_identity_token,
    require_auth_context,
    require_platform_admin,
    require_tenant_admin,
)
from control_plane.core.context import get_current_tenant_id, set_current_tenant_id, set_current_user_id


def _ctx(*, subject: str = "user_1", claims: dict | None = None) -> AuthContext:
    return AuthContext(tenant_id=uuid4(), user_id=uuid4(), subject=subject, claims=claims or {})


class _Session:
    def __init__(self, *, scalars: list | None = None, user: object | None = None) -> None:
        self._scalars = list(scalars or [])
        self._user = user

    async def scalar(self, _stmt):  # noqa: ANN001
        return self._scalars.pop(0) if self._scalars else None

    async def get(self, _model, _ident):  # noqa: ANN001
        return self._user


@pytest.mark.asyncio
async def test_require_platform_admin_allows_listed_subject(monkeypatch: pytest.MonkeyPatch) -> None:
    from control_plane.core import auth

    monkeypatch.setattr(auth.settings, "platform_admin_subjects_csv", "ops, boss")
    ctx = _ctx(subject="boss")
    assert await require_platform_admin(ctx) is ctx


@pytest.mark.asyncio
async def test_require_platform_admin_blocks_other_subjects(monkeypatch: pytest.MonkeyPatch) -> None:
    from control_plane.core import auth

    monkeypatch.setattr(auth.settings, "platform_admin_subjects_csv", "boss")
    with pytest.raises(HTTPException) as exc:
        await require_platform_admin(_ctx(subject="normal", claims={"role": "super_admin"}))
    assert exc.value.status_code == 403


@pytest.mark.asyncio
@pytest.mark.parametrize(("role", "allowed"), [("owner", True), ("admin", True), ("member", False), (None, False)])
async def test_require_tenant_admin_checks_active_role(role: str | None, allowed: bool) -> None:
    ctx = _ctx()
    if allowed:
        assert await require_tenant_admin(ctx, _Session(scalars=[role])) is ctx
        return
    with pytest.raises(HTTPException) as exc:
        await require_tenant_admin(ctx, _Session(scalars=[role]))
    assert exc.value.status_code == 403


def test_get_signing_key_missing_kid(monkeypatch: pytest.MonkeyPatch) -> None:
    from control_plane.core import auth

    monkeypatch.setattr(auth.jwt, "get_unverified_header", lambda token: {})
    with pytest.raises(HTTPException) as exc:
        _get_signing_key("token")
    assert exc.value.status_code == 401


def test_get_signing_key_invalid_header(monkeypatch: pytest.MonkeyPatch) -> None:
    from control_plane.core import auth

    def _bad_header(_token: str) -> dict:
        raise JWTError("invalid header")

    monkeypatch.setattr(auth.jwt, "get_unverified_header", _bad_header)
    with pytest.raises(HTTPException) as exc:
        _get_signing_key("token")
    assert exc.value.status_code == 401


def test_get_signing_key_matches_kid(monkeypatch: pytest.MonkeyPatch) -> None:
    from control_plane.core import auth

    monkeypatch.setattr(auth.jwt, "get_unverified_header", lambda token: {"kid": "abc"})
    monkeypatch.setattr(auth.jwks_cache, "get", lambda url: {"keys": [{"kid": "zzz"}, {"kid": "abc", "kty": "RSA"}]})
    assert _get_signing_key("token")["kid"] == "abc"

    monkeypatch.setattr(auth.jwks_cache, "get", lambda url: {"keys": [{"kid": "zzz"}]})
    with pytest.raises(HTTPException) as exc:
        _get_signing_key("token")
    assert exc.value.status_code == 401


def test_get_signing_key_unreachable_jwks_is_503(monkeypatch: pytest.MonkeyPatch) -> None:
    from control_plane.core import auth

    def _down(url: str) -> dict:
        raise requests.ConnectionError("down")

    monkeypatch.setattr(auth.jwt, "get_unverified_header", lambda token: {"kid": "abc"})
    monkeypatch.setattr(auth.jwks_cache, "get", _down)
    with pytest.raises(HTTPException) as exc:
        _get_signing_key("token")
    assert exc.value.status_code == 503


def test_decode_identity_token_invalid(monkeypatch: pytest.MonkeyPatch) -> None:
    from control_plane.core import auth

    monkeypatch.setattr(auth, "_get_signing_key", lambda token: {"kid": "abc"})

    def _boom(*args, **kwargs):  # noqa: ANN002, ANN003
        raise JWTError("bad token")

    monkeypatch.setattr(auth.jwt, "decode", _boom)
    with pytest.raises(HTTPException) as exc:
        decode_identity_token("token")
    assert exc.value.status_code == 401


def test_jwks_cache_fetches_once_within_ttl(monkeypatch: pytest.MonkeyPatch) -> None:
    from control_plane.core import auth

    calls = {"count": 0}
    now = {"value": 1000.0}

    class _Resp:
        def raise_for_status(self) -> None:
            return None

        def json(self) -> dict:
            return {"keys": [{"kid": "a"}]}

    def _get(url: str, timeout: int):  # noqa: ANN001
        calls["count"] += 1
        return _Resp()

    cache = JwksCache(ttl_seconds=300)
    monkeypatch.setattr(auth.requests, "get", _get)
    monkeypatch.setattr(auth.time, "time", lambda: now["value"])
    assert cache.get("https://jwks.example") == cache.get("https://jwks.example")
    assert calls["count"] == 1

    now["value"] += 301
    cache.get("https://jwks.example")
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_require_auth_context_resolves_tenant_and_user(monkeypatch: pytest.MonkeyPatch) -> None:
    from control_plane.core import auth

    tenant_id = uuid4()
    user_id = uuid4()
    monkeypatch.setattr(
        auth,
        "decode_identity_token",
        lambda _token: {"tenant": "acme", "sub": str(user_id), "role": "member"},
    )

    request = SimpleNamespace(state=SimpleNamespace())
    credentials = SimpleNamespace(credentials="jwt")
    session = _Session(scalars=[SimpleNamespace(id=tenant_id)], user=SimpleNamespace(id=user_id))
    try:
        context = await require_auth_context(request, credentials, session)

        assert (context.tenant_id, context.user_id) == (tenant_id, user_id)
        assert request.state.tenant_id == tenant_id
        assert request.state.auth_claims["tenant"] == "acme"
        assert get_current_tenant_id() == tenant_id
    finally:
        set_current_tenant_id(None)
        set_current_user_id(None)


@pytest.mark.asyncio
async def test_require_auth_context_falls_back_to_email(monkeypatch: pytest.MonkeyPatch) -> None:
    from control_plane.core import auth

    tenant_id = uuid4()
    user_id = uuid4()
    monkeypatch.setattr(
        auth,
        "decode_identity_token",
        lambda _token: {"tenant": str(tenant_id), "sub": "idp|123", "email": "Ann@Acme.test"},
    )

    request = SimpleNamespace(state=SimpleNamespace())
    session = _Session(scalars=[SimpleNamespace(id=tenant_id), user_id])
    try:
        context = await require_auth_context(request, SimpleNamespace(credentials="jwt"), session)
        assert context.user_id == user_id
        assert context.subject == "idp|123"
    finally:
        set_current_tenant_id(None)
        set_current_user_id(None)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "claims",
    [
        {"sub": "user_1"},
        {"tenant": "missing", "sub": "user_2"},
        {"tenant": "acme", "sub": "not-a-uuid"},
    ],
)
async def test_require_auth_context_rejects_unresolvable_identity(
    monkeypatch: pytest.MonkeyPatch,
    claims: dict,
) -> None:
    from control_plane.core import auth

    monkeypatch.setattr(auth, "decode_identity_token", lambda _token: claims)
    tenant = SimpleNamespace(id=uuid4()) if claims.get("tenant") == "acme" else None

    with pytest.raises(HTTPException) as exc:
        await require_auth_context(
            SimpleNamespace(state=SimpleNamespace()),
            SimpleNamespace(credentials="jwt"),
            _Session(scalars=[tenant]),
        )
    assert exc.value.status_code == 403
