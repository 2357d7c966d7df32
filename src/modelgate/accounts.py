from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

import structlog
from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError

from .errors import AccountError, AuthError, ErrorKind, ValidationError
from .identity import IdentityResolver, Principal
from .metrics import account_events_total

log = structlog.get_logger()

_ph = PasswordHasher()


def hash_password(password: str) -> str:
    return _ph.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return _ph.verify(password_hash, password)
    except VerifyMismatchError:
        return False


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    local, sep, domain = email.partition("@")
    return bool(sep and local and "." in domain and not domain.startswith(".") and not domain.endswith("."))


@dataclass(frozen=True)
class UserRecord:
    id: str
    email: str
    password_hash: str
    tier: str
    created_at: datetime


class DuplicateAccount(Exception):
    pass


class UserStore(Protocol):
    async def get_by_email(self, email: str) -> UserRecord | None: ...

    async def create(self, record: UserRecord) -> None:
        """Persist `record`, raising `DuplicateAccount` if the email is taken."""
        ...


class InMemoryUserStore:
    def __init__(self) -> None:
        self._by_email: dict[str, UserRecord] = {}

    async def get_by_email(self, email: str) -> UserRecord | None:
        return self._by_email.get(email)

    async def create(self, record: UserRecord) -> None:
        if record.email in self._by_email:
            raise DuplicateAccount(record.email)
        self._by_email[record.email] = record


class AccountService:
    """
    Email/password sign-up and login for registered principals.

    Passwords are hashed with argon2 off the event loop. Login failures use
    one generic message whether the email is unknown or the password is wrong,
    and an unknown email still pays for a hash verification.

    `assign_tier` is called with `(principal_id, tier)` after every successful
    register or login so the registered quota store knows the principal's tier.
    """

    def __init__(
        self,
        store: UserStore,
        identity: IdentityResolver,
        *,
        tiers: Iterable[str],
        default_tier: str,
        min_password_length: int = 8,
        assign_tier: Callable[[str, str], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._identity = identity
        self._tiers = frozenset(tiers)
        self._default_tier = default_tier
        self._min_password_length = max(1, min_password_length)
        self._assign_tier = assign_tier
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(timezone.utc))
        self._decoy_hash: str | None = None

    def _session(self, user: UserRecord) -> tuple[str, Principal]:
        if self._assign_tier is not None:
            self._assign_tier(user.id, user.tier)
        return self._identity.issue_registered(user.id, user.tier)

    async def register(self, email: str, password: str, tier: str | None = None) -> tuple[str, Principal]:
        email = normalize_email(email)
        if not is_valid_email(email):
            raise ValidationError(ErrorKind.INVALID_PAYLOAD, "Invalid email format.", field="email")
        if len(password) < self._min_password_length:
            raise ValidationError(
                ErrorKind.INVALID_PAYLOAD,
                f"Password must be at least {self._min_password_length} characters.",
                field="password",
            )
        tier = tier or self._default_tier
        if tier not in self._tiers:
            raise ValidationError(ErrorKind.INVALID_PAYLOAD, f"Unknown subscription tier {tier!r}.", field="tier")

        if await self._store.get_by_email(email) is not None:
            account_events_total.labels(action="register", result="exists").inc()
            raise AccountError()

        record = UserRecord(
            id=f"user_{uuid.uuid4().hex}",
            email=email,
            password_hash=await asyncio.to_thread(hash_password, password),
            tier=tier,
            created_at=self._clock(),
        )
        try:
            await self._store.create(record)
        except DuplicateAccount as e:
            account_events_total.labels(action="register", result="exists").inc()
            raise AccountError() from e

        account_events_total.labels(action="register", result="created").inc()
        log.info("account_registered", principal_id=record.id, tier=tier)
        return self._session(record)

    async def login(self, email: str, password: str) -> tuple[str, Principal]:
        user = await self._store.get_by_email(normalize_email(email))
        if user is None:
            if self._decoy_hash is None:
                self._decoy_hash = await asyncio.to_thread(hash_password, uuid.uuid4().hex)
            await asyncio.to_thread(verify_password, password, self._decoy_hash)
            ok = False
        else:
            ok = await asyncio.to_thread(verify_password, password, user.password_hash)

        if not ok or user is None:
            account_events_total.labels(action="login", result="rejected").inc()
            log.info("login_failed", known_account=user is not None)
            raise AuthError.invalid("Invalid email or password.")

        account_events_total.labels(action="login", result="ok").inc()
        log.info("login_succeeded", principal_id=user.id)
        return self._session(user)
