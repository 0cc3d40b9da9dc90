"""
Security module for credential encryption.
"""

from .encryption import CredentialEncryptor, CredentialDecryptionError

__all__ = [
    "CredentialEncryptor",
    "CredentialDecryptionError",
]
