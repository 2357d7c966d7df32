from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from .errors import ConfigurationError


def new_fernet_key() -> str:
    return Fernet.generate_key().decode("ascii")


def _fernet(key: str) -> Fernet:
    try:
        return Fernet(key.encode("utf-8"))
    except ValueError as e:
        raise ConfigurationError("CREDENTIALS_FERNET_KEY is not a valid Fernet key.") from e


def seal(key: str, plaintext: bytes) -> bytes:
    return _fernet(key).encrypt(plaintext)


def unseal(key: str, token: bytes) -> bytes:
    try:
        return _fernet(key).decrypt(token)
    except InvalidToken as e:
        raise ConfigurationError("Failed to decrypt provider credentials (wrong key or corrupted file).") from e
