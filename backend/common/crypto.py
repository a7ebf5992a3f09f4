"""Sealing of pending-registration passwords at rest.

Passwords wait in the pending tables (and in the chat dialogue state) until
the account is created. When PENDING_PASSWORD_KEY is set they are stored as
Fernet ciphertext with a version prefix; rows written before the key was
configured stay readable as cleartext.
"""
import base64
import hashlib
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from common.config import settings

logger = logging.getLogger(__name__)

SEALED_PREFIX = "enc:v1:"

_fernet_cache = {}


def _get_fernet(secret: Optional[str]) -> Optional[Fernet]:
    if not secret:
        return None
    fernet = _fernet_cache.get(secret)
    if fernet is None:
        key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())
        fernet = Fernet(key)
        _fernet_cache[secret] = fernet
    return fernet


def seal_secret(plain: str, secret: Optional[str] = None) -> str:
    fernet = _get_fernet(secret if secret is not None else settings.PENDING_PASSWORD_KEY)
    if fernet is None:
        return plain
    return SEALED_PREFIX + fernet.encrypt(plain.encode("utf-8")).decode("ascii")


def open_secret(stored: str, secret: Optional[str] = None) -> str:
    if not stored or not stored.startswith(SEALED_PREFIX):
        return stored or ""
    fernet = _get_fernet(secret if secret is not None else settings.PENDING_PASSWORD_KEY)
    if fernet is None:
        raise RuntimeError("PENDING_PASSWORD_KEY is required to read sealed pending passwords")
    try:
        return fernet.decrypt(stored[len(SEALED_PREFIX):].encode("ascii")).decode("utf-8")
    except InvalidToken as exc:
        logger.error("Sealed pending password could not be decrypted (key rotated?)")
        raise RuntimeError("sealed pending password is unreadable") from exc
