"""Encryption utilities for vaulted payment tokens"""
import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

FERNET_PREFIX = "fernet:"
WEAK_PREFIX = "b64:"

KEY_HELP = (
    "Generate one with: python -c \"from cryptography.fernet import Fernet; "
    "print(Fernet.generate_key().decode())\""
)


class TokenCipher:
    """Encrypts gateway tokens before they reach the database

    With a Fernet key configured, ciphertexts are stored as ``fernet:<token>``.
    Without one, tokens fall back to ``b64:<base64>`` which is an encoding,
    not encryption; every use of it is logged so the operational risk stays
    visible.
    """

    def __init__(self, key: Optional[str] = None):
        self._fernet: Optional[Fernet] = None
        if key:
            key_bytes = key if isinstance(key, bytes) else key.encode()
            try:
                self._fernet = Fernet(key_bytes)
            except ValueError as e:
                raise ValueError(
                    f"Invalid ENCRYPTION_KEY format: {e}. "
                    "The key must be 32 bytes, base64-encoded (URL-safe), resulting in 44 characters. "
                    + KEY_HELP
                )
        else:
            logger.warning(f"No vault encryption key configured; tokens will be stored base64-encoded. {KEY_HELP}")

    @property
    def is_strong(self) -> bool:
        return self._fernet is not None

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token

        Raises:
            ValueError: If the token is empty
        """
        if not plaintext:
            raise ValueError("Refusing to vault an empty token")
        if self._fernet is not None:
            return FERNET_PREFIX + self._fernet.encrypt(plaintext.encode()).decode()
        logger.warning("Vault token stored with weak b64 encoding (ENCRYPTION_KEY not set)")
        return WEAK_PREFIX + base64.urlsafe_b64encode(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored token

        Raises:
            ValueError: If decryption fails (unknown scheme, wrong key, corrupted data)
        """
        if ciphertext.startswith(FERNET_PREFIX):
            if self._fernet is None:
                raise ValueError("Token is Fernet-encrypted but no ENCRYPTION_KEY is configured")
            try:
                return self._fernet.decrypt(ciphertext[len(FERNET_PREFIX):].encode()).decode()
            except InvalidToken as e:
                logger.error(f"Decryption failed: {type(e).__name__}")
                raise ValueError(f"Decryption failed: {type(e).__name__}")
        if ciphertext.startswith(WEAK_PREFIX):
            logger.warning("Reading vault token stored with weak b64 encoding")
            return base64.urlsafe_b64decode(ciphertext[len(WEAK_PREFIX):].encode()).decode()
        raise ValueError("Unrecognised vault token scheme")
