"""
Unit tests for credential encryption
"""
import pytest

from buybox_repricer.security.encryption import CredentialDecryptionError, CredentialEncryptor
from buybox_repricer.utils.exceptions import ConfigurationError


@pytest.fixture
def encryptor():
    return CredentialEncryptor(CredentialEncryptor.generate_key(), secondary_keys=[])


class TestCredentialEncryptor:
    """Test Fernet credential storage"""

    def test_round_trip(self, encryptor):
        credentials = {"api_key": "secret", "seller_id": 7}

        stored = encryptor.encrypt_credentials(credentials)

        assert "secret" not in stored["encrypted"]
        assert encryptor.decrypt_credentials(stored) == credentials

    def test_wrong_key(self, encryptor):
        stored = encryptor.encrypt_credentials({"api_key": "secret"})
        other = CredentialEncryptor(CredentialEncryptor.generate_key(), secondary_keys=[])

        with pytest.raises(CredentialDecryptionError):
            other.decrypt_credentials(stored)

    @pytest.mark.parametrize("stored", [None, {}, {"encrypted": ""}])
    def test_missing_payload(self, encryptor, stored):
        with pytest.raises(CredentialDecryptionError):
            encryptor.decrypt_credentials(stored)

    def test_key_rotation(self, encryptor):
        stored = encryptor.encrypt_credentials({"api_key": "secret"})
        new_key = CredentialEncryptor.generate_key()

        encryptor.rotate_key(new_key)
        rotated = encryptor.reencrypt(stored)

        assert encryptor.decrypt_credentials(stored) == {"api_key": "secret"}
        only_new = CredentialEncryptor(new_key, secondary_keys=[])
        assert only_new.decrypt_credentials(rotated) == {"api_key": "secret"}

    def test_missing_master_key(self, monkeypatch):
        monkeypatch.delenv("REPRICER_ENCRYPTION_MASTER_KEY", raising=False)

        with pytest.raises(ConfigurationError):
            CredentialEncryptor()

    def test_invalid_master_key(self):
        with pytest.raises(ConfigurationError):
            CredentialEncryptor("not-a-fernet-key", secondary_keys=[])
