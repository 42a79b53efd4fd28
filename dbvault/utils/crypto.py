"""
Encryption of data source passwords.

Uses Fernet symmetric encryption with a key derived from the application's
SECRET_KEY and a salt stored in the encryption_key table.
"""

import base64
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)


class CryptoManager:
    """Handles encryption and decryption of stored credentials."""

    def __init__(self):
        self._fernet = None
        self._salt = None

    def initialize(self, passphrase: str, salt: Optional[bytes] = None, iterations: int = 480000) -> bytes:
        """
        Derive the encryption key.

        Args:
            passphrase: Secret to derive the key from
            salt: Optional salt (if None, generates new one)
            iterations: PBKDF2 iterations

        Returns:
            The salt used (persist it so the key can be derived again)
        """
        if salt is None:
            salt = os.urandom(16)

        self._salt = salt

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=iterations,
        )
        self._fernet = Fernet(base64.urlsafe_b64encode(kdf.derive(passphrase.encode())))
        return salt

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Raises:
            RuntimeError: If crypto manager not initialized
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """
        Decrypt a string produced by encrypt().

        Raises:
            RuntimeError: If crypto manager not initialized
            cryptography.fernet.InvalidToken: If decryption fails
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        return self._fernet.decrypt(token.encode()).decode()

    @property
    def is_initialized(self) -> bool:
        """Check if the crypto manager has been initialized."""
        return self._fernet is not None


# Global instance, initialized by init_crypto() during app start-up
crypto_manager = CryptoManager()


def init_crypto(app, manager: CryptoManager = None) -> CryptoManager:
    """
    Initialize the crypto manager from SECRET_KEY and the stored salt.

    Creates and stores a salt on first start. Must run inside an app context
    after the schema exists.
    """
    from dbvault import db
    from dbvault.models import EncryptionKey

    manager = manager or crypto_manager
    iterations = app.config.get('PASSWORD_KDF_ITERATIONS', 480000)

    record = EncryptionKey.query.first()
    if record:
        manager.initialize(app.config['SECRET_KEY'], base64.b64decode(record.salt), iterations)
        logger.info("Crypto manager initialized from stored salt")
    else:
        salt = manager.initialize(app.config['SECRET_KEY'], iterations=iterations)
        db.session.add(EncryptionKey(salt=base64.b64encode(salt).decode()))
        db.session.commit()
        logger.info("Crypto manager initialized with new salt")

    return manager


def decrypt_password(token: Optional[str], manager: CryptoManager = None) -> str:
    """
    Decrypt a stored password, returning '' when none is stored.

    Raises:
        ValueError: If the token cannot be decrypted with the current key
    """
    if not token:
        return ''

    manager = manager or crypto_manager
    try:
        return manager.decrypt(token)
    except InvalidToken:
        raise ValueError("Stored password cannot be decrypted (SECRET_KEY changed?)")
