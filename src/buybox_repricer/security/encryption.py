"""
Encryption utilities for marketplace connection credentials.

Uses Fernet symmetric encryption with key rotation support. Stored payloads
have the shape ``{"encrypted": "<fernet token>"}`` where the token wraps the
JSON credential dict handed to the adapter factory.
"""

import json
import os
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, MultiFernet, InvalidToken

from buybox_repricer.utils.exceptions import ConfigurationError
from buybox_repricer.utils.logger import get_logger

logger = get_logger(__name__)


class CredentialDecryptionError(ValueError):
    """Stored credentials could not be decrypted or parsed."""
    pass


class CredentialEncryptor:
    """
    Encrypts and decrypts connection credentials using Fernet.

    Supports key rotation through MultiFernet: the first key encrypts, every
    key may decrypt.
    """

    def __init__(self, master_key: Optional[str] = None, secondary_keys: Optional[List[str]] = None):
        """
        Initialize encryptor with master key.

        Args:
            master_key: Base64-encoded Fernet key. If None, loads from env.
            secondary_keys: Older keys still accepted for decryption
        """
        self.master_key = master_key or os.getenv("REPRICER_ENCRYPTION_MASTER_KEY")

        if not self.master_key:
            raise ConfigurationError(
                "REPRICER_ENCRYPTION_MASTER_KEY is required to store credentials. "
                "Generate one with CredentialEncryptor.generate_key()"
            )

        self.keys = self._load_keys(secondary_keys)
        try:
            self.fernet = MultiFernet([Fernet(key) for key in self.keys])
        except ValueError as e:
            raise ConfigurationError(f"Invalid encryption key: {e}")

        logger.debug(f"Initialized credential encryptor with {len(self.keys)} key(s)")

    def _load_keys(self, secondary_keys: Optional[List[str]]) -> List[bytes]:
        keys = [self.master_key.encode() if isinstance(self.master_key, str) else self.master_key]

        if secondary_keys is None:
            secondary = os.getenv("REPRICER_ENCRYPTION_SECONDARY_KEY")
            secondary_keys = [secondary] if secondary else []

        for key in secondary_keys:
            keys.append(key.encode() if isinstance(key, str) else key)

        return keys

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")
        return self.fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt ciphertext string.

        Raises:
            CredentialDecryptionError: If no key can decrypt the token
        """
        if not ciphertext:
            raise CredentialDecryptionError("Cannot decrypt empty string")

        try:
            return self.fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("Decryption failed - invalid token or corrupted data")
            raise CredentialDecryptionError("Invalid token or corrupted credentials")

    def encrypt_credentials(self, credentials: Dict[str, Any]) -> Dict[str, str]:
        """Wrap a credential dict for storage."""
        return {"encrypted": self.encrypt(json.dumps(credentials, sort_keys=True))}

    def decrypt_credentials(self, stored: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Unwrap a stored credential payload.

        Raises:
            CredentialDecryptionError: If the payload is missing or unreadable
        """
        encrypted = (stored or {}).get("encrypted")
        if not encrypted:
            raise CredentialDecryptionError("No encrypted data found")

        try:
            credentials = json.loads(self.decrypt(encrypted))
        except json.JSONDecodeError as e:
            raise CredentialDecryptionError(f"Invalid credentials format: {e}")

        if not isinstance(credentials, dict):
            raise CredentialDecryptionError("Credentials must decode to an object")
        return credentials

    def rotate_key(self, new_key: str) -> None:
        """New key becomes primary; old keys keep decrypting."""
        new_key_bytes = new_key.encode() if isinstance(new_key, str) else new_key
        self.keys.insert(0, new_key_bytes)
        self.fernet = MultiFernet([Fernet(key) for key in self.keys])

        logger.info(f"Key rotation complete - now using {len(self.keys)} keys")

    def reencrypt(self, stored: Dict[str, Any]) -> Dict[str, str]:
        """Re-encrypt a stored payload under the current primary key."""
        return {"encrypted": self.fernet.rotate(stored["encrypted"].encode()).decode()}

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()
