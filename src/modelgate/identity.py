from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol

import jwt
import structlog

from .errors import AuthError

log = structlog.get_logger()

SESSION_TOKEN_TYPE = "session"
JWT_ALGORITHM = "HS256"


class PrincipalKind(str, Enum):
    REGISTERED = "registered"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class Principal:
    id: str
    kind: PrincipalKind
    issued_at: datetime
    tier: str | None = None

    @property
    def is_anonymous(self) -> bool:
        return self.kind is PrincipalKind.ANONYMOUS


class TokenSigner(Protocol):
    def sign(self, claims: dict[str, Any]) -> str: ...

    def verify(self, token: str) -> dict[str, Any]: ...


class JwtTokenSigner:
    """HMAC-signed JWTs keyed by a process-wide secret.

    `verify` raises `AuthError` directly: a token that does not even decode is
    treated as missing, a well-formed token with a bad signature or expired
    `exp` as invalid.
    """

    def __init__(self, signing_key: str, *, algorithm: str = JWT_ALGORITHM, leeway_seconds: int = 0):
        if not signing_key:
            raise ValueError("signing_key must be non-empty.")
        self._key = signing_key
        self._algorithm = algorithm
        self._leeway = leeway_seconds

    def sign(self, claims: dict[str, Any]) -> str:
        return jwt.encode(claims, self._key, algorithm=self._algorithm)

    def verify(self, token: str) -> dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self._key,
                algorithms=[self._algorithm],
                leeway=self._leeway,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthError.invalid("Credential has expired.") from e
        except jwt.InvalidSignatureError as e:
            raise AuthError.invalid("Credential signature mismatch.") from e
        except jwt.DecodeError as e:
            raise AuthError.missing("Malformed credential.") from e
        except jwt.InvalidTokenError as e:
            raise AuthError.invalid(f"Credential rejected: {e}") from e


def new_guest_id(now: datetime) -> str:
    return f"anon-{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:8]}"


class IdentityResolver:
    def __init__(
        self,
        signer: TokenSigner,
        *,
        anonymous_ttl_seconds: int = 24 * 60 * 60,
        registered_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], datetime] | None = None,
    ):
        self._signer = signer
        self._anonymous_ttl = timedelta(seconds=anonymous_ttl_seconds)
        self._registered_ttl = timedelta(seconds=registered_ttl_seconds)
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(timezone.utc))

    def resolve(self, credential: str | None) -> Principal:
        if not credential or not credential.strip():
            raise AuthError.missing()

        claims = self._signer.verify(credential.strip())

        if claims.get("typ") != SESSION_TOKEN_TYPE:
            raise AuthError.invalid("Credential is not a session token.")
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise AuthError.invalid("Credential has no subject.")
        try:
            kind = PrincipalKind(claims.get("kind"))
        except ValueError as e:
            raise AuthError.invalid("Credential has an unknown principal kind.") from e

        tier = claims.get("tier") if kind is PrincipalKind.REGISTERED else None
        if tier is not None and not isinstance(tier, str):
            raise AuthError.invalid("Credential tier must be a string.")

        return Principal(
            id=subject,
            kind=kind,
            tier=tier,
            issued_at=datetime.fromtimestamp(int(claims["iat"]), tz=timezone.utc),
        )

    def _mint(self, principal: Principal, ttl: timedelta) -> str:
        claims: dict[str, Any] = {
            "sub": principal.id,
            "kind": principal.kind.value,
            "typ": SESSION_TOKEN_TYPE,
            "iat": int(principal.issued_at.timestamp()),
            "exp": int((principal.issued_at + ttl).timestamp()),
        }
        if principal.tier is not None:
            claims["tier"] = principal.tier
        return self._signer.sign(claims)

    def issue_anonymous(self) -> tuple[str, Principal]:
        now = self._clock()
        principal = Principal(
            id=new_guest_id(now),
            kind=PrincipalKind.ANONYMOUS,
            issued_at=now.replace(microsecond=0),
        )
        log.info("anonymous_session_issued", principal_id=principal.id)
        return self._mint(principal, self._anonymous_ttl), principal

    def issue_registered(self, principal_id: str, tier: str) -> tuple[str, Principal]:
        if not principal_id:
            raise ValueError("principal_id must be non-empty.")
        principal = Principal(
            id=principal_id,
            kind=PrincipalKind.REGISTERED,
            tier=tier,
            issued_at=self._clock().replace(microsecond=0),
        )
        return self._mint(principal, self._registered_ttl), principal
