"""
Security helpers: encryption at rest and shared-secret checks
"""

import hmac
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from core.config import settings

# Key must come from the environment in production
ENCRYPTION_KEY = settings.ENCRYPTION_KEY or os.environ.get(
    "ENCRYPTION_KEY", Fernet.generate_key()
)
if isinstance(ENCRYPTION_KEY, str):
    # .env may carry "base64:..."
    if ENCRYPTION_KEY.startswith("base64:"):
        ENCRYPTION_KEY = ENCRYPTION_KEY[7:].encode()
    else:
        ENCRYPTION_KEY = ENCRYPTION_KEY.encode()

FERNET = Fernet(ENCRYPTION_KEY)


def encrypt(data: str) -> bytes:
    """Encrypts a string with Fernet"""
    return FERNET.encrypt(data.encode())


def decrypt(encrypted_data: bytes) -> str:
    """Decrypts Fernet data"""
    return FERNET.decrypt(encrypted_data).decode()


def encrypt_optional(value: Optional[str]) -> Optional[str]:
    """Encrypts a nullable secret field, returning the token as text."""
    if value is None:
        return None
    return encrypt(value).decode()


def decrypt_optional(token: Optional[str]) -> Optional[str]:
    """
    Reverses encrypt_optional

    Rows imported before encryption was enabled are stored in clear text,
    so an invalid token is returned unchanged.
    """
    if token is None:
        return None
    try:
        return decrypt(token.encode())
    except InvalidToken:
        return token


def secrets_match(received: Optional[str], expected: str) -> bool:
    """Constant-time comparison for webhook shared secrets"""
    if not expected:
        return True
    if not received:
        return False
    return hmac.compare_digest(received.encode(), expected.encode())

