"""
Fernet encryption for server-only secrets stored in the database
(CAPTCHA secret keys in form_settings).
"""
import os
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger("backend.encryption")

# Must be 32 url-safe base64-encoded bytes (Fernet.generate_key())
ENCRYPTION_KEY = os.getenv("CAPTCHA_ENCRYPTION_KEY", "")


def _cipher() -> Optional[Fernet]:
    if not ENCRYPTION_KEY:
        return None
    return Fernet(ENCRYPTION_KEY.encode())


if not ENCRYPTION_KEY:
    logger.warning("CAPTCHA_ENCRYPTION_KEY not set - CAPTCHA secret keys will be stored unencrypted")


def encrypt_secret(secret: Optional[str]) -> Optional[str]:
    """Encrypt a secret for storage; passthrough when no key is configured."""
    if not secret:
        return secret
    cipher = _cipher()
    if cipher is None:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(stored: Optional[str]) -> Optional[str]:
    """Decrypt a stored secret.

    Values written before a key was configured are not Fernet tokens; those
    are returned unchanged so existing forms keep verifying.
    """
    if not stored:
        return stored
    cipher = _cipher()
    if cipher is None:
        return stored
    try:
        return cipher.decrypt(stored.encode()).decode()
    except InvalidToken:
        logger.warning("Stored secret is not a valid token; using it as plaintext")
        return stored
