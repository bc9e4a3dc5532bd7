"""Credential vault for stored store-account usernames and passwords."""
import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from lunarbot.config import config
from lunarbot.errors import CredentialError

logger = logging.getLogger(__name__)

DEFAULT_SALT = "lunarbot-credential-salt"

KEY_MISMATCH_HINT = (
    "Failed to decrypt stored credential. The ENCRYPTION_KEY or ENCRYPTION_SALT "
    "probably differs from the one used to store it; restore the original key "
    "or re-enter the store account credentials."
)


def derive_key(secret: str, salt: str) -> bytes:
    """Derive a urlsafe-base64 Fernet key from a passphrase with Scrypt."""
    kdf = Scrypt(salt=salt.encode(), length=32, n=2**14, r=8, p=1)
    return base64.urlsafe_b64encode(kdf.derive(secret.encode()))


class CredentialVault:
    """Encrypt/decrypt secrets with a key derived from ENCRYPTION_KEY."""

    def __init__(self, secret: Optional[str] = None, salt: Optional[str] = None):
        secret = secret or config.ENCRYPTION_KEY
        if not secret:
            raise ValueError("ENCRYPTION_KEY is required for the credential vault")
        self._fernet = Fernet(derive_key(secret, salt or config.ENCRYPTION_SALT or DEFAULT_SALT))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Raises CredentialError when the token was not produced with this key."""
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except (InvalidToken, ValueError) as e:
            logger.error("Credential decryption failed (key mismatch or corrupt ciphertext)")
            raise CredentialError(KEY_MISMATCH_HINT) from e
