"""
Credential encryption at rest.
"""

import base64

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

# Salt must stay constant so stored cookies stay readable across restarts.
_KEY_SALT = b"media_resolver_cookie_salt_v1"


class CredentialCipher:
    """Encrypt and decrypt cookie payloads with a key derived from SECRET_KEY."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("secret must not be empty")
        self._fernet = Fernet(self._derive_key(secret))

    @staticmethod
    def _derive_key(secret: str) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_KEY_SALT,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(secret.encode()))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as error:
            raise ValueError("stored credential cannot be decrypted with this SECRET_KEY") from error


def mask_secret(value: str, visible: int = 4) -> str:
    """Show only the head and tail of a secret, for listings and logs."""
    if not value:
        return ""
    if len(value) <= visible * 2:
        return "*" * len(value)
    return f"{value[:visible]}...{value[-visible:]}"
