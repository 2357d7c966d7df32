import re
from datetime import datetime, timedelta, timezone

import pytest

from modelgate.errors import AuthError, ErrorKind
from modelgate.identity import IdentityResolver, JwtTokenSigner, PrincipalKind, new_guest_id


def _resolver(clock=None, key: str = "test-signing-key") -> IdentityResolver:
    return IdentityResolver(JwtTokenSigner(key), clock=clock)


def test_anonymous_session_roundtrip():
    resolver = _resolver()
    token, issued = resolver.issue_anonymous()

    principal = resolver.resolve(token)
    assert principal.id == issued.id
    assert principal.kind is PrincipalKind.ANONYMOUS
    assert principal.is_anonymous
    assert principal.tier is None
    assert principal.issued_at == issued.issued_at


def test_registered_session_carries_tier():
    resolver = _resolver()
    token, _ = resolver.issue_registered("user_42", "pro")

    principal = resolver.resolve(token)
    assert principal.id == "user_42"
    assert principal.kind is PrincipalKind.REGISTERED
    assert principal.tier == "pro"


def test_guest_ids_are_unique_and_timestamped():
    now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    a, b = new_guest_id(now), new_guest_id(now)
    assert a != b
    assert re.fullmatch(rf"anon-{int(now.timestamp() * 1000)}-[0-9a-f]{{8}}", a)


@pytest.mark.parametrize("credential", [None, "", "   "])
def test_missing_credential_is_auth_missing(credential):
    with pytest.raises(AuthError) as exc:
        _resolver().resolve(credential)
    assert exc.value.kind is ErrorKind.AUTH_MISSING


def test_garbage_credential_is_auth_missing():
    with pytest.raises(AuthError) as exc:
        _resolver().resolve("not-a-jwt")
    assert exc.value.kind is ErrorKind.AUTH_MISSING


def test_expired_credential_is_auth_invalid():
    two_days_ago = datetime.now(timezone.utc) - timedelta(days=2)
    token, _ = _resolver(clock=lambda: two_days_ago).issue_anonymous()

    with pytest.raises(AuthError) as exc:
        _resolver().resolve(token)
    assert exc.value.kind is ErrorKind.AUTH_INVALID


def test_foreign_signature_is_auth_invalid():
    token, _ = _resolver(key="someone-else").issue_anonymous()

    with pytest.raises(AuthError) as exc:
        _resolver().resolve(token)
    assert exc.value.kind is ErrorKind.AUTH_INVALID


def test_non_session_token_is_rejected():
    signer = JwtTokenSigner("test-signing-key")
    now = int(datetime.now(timezone.utc).timestamp())
    token = signer.sign({"sub": "x", "kind": "anonymous", "typ": "refresh", "iat": now, "exp": now + 60})

    with pytest.raises(AuthError) as exc:
        IdentityResolver(signer).resolve(token)
    assert exc.value.kind is ErrorKind.AUTH_INVALID


def test_unknown_principal_kind_is_rejected():
    signer = JwtTokenSigner("test-signing-key")
    now = int(datetime.now(timezone.utc).timestamp())
    token = signer.sign({"sub": "x", "kind": "admin", "typ": "session", "iat": now, "exp": now + 60})

    with pytest.raises(AuthError) as exc:
        IdentityResolver(signer).resolve(token)
    assert exc.value.kind is ErrorKind.AUTH_INVALID


def test_signer_requires_key():
    with pytest.raises(ValueError):
        JwtTokenSigner("")
