"""
Fixtures for tests that run against a real (SQLite) database
"""
import pytest

from buybox_repricer.database.connection import Database
from buybox_repricer.database.store import SqlAlchemyRepricingStore
from buybox_repricer.security.encryption import CredentialEncryptor


@pytest.fixture
def encryption_key() -> str:
    return CredentialEncryptor.generate_key()


@pytest.fixture
def database():
    """In-memory SQLite database with the schema created"""
    db = Database("sqlite://")
    db.init_db()
    yield db
    db.drop_db()
    db.dispose()


@pytest.fixture
def sql_store(database, encryption_key) -> SqlAlchemyRepricingStore:
    return SqlAlchemyRepricingStore(database, CredentialEncryptor(encryption_key, secondary_keys=[]))
