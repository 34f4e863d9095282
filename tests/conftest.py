import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from mail_gateway.sql import create_adapter
from mail_gateway.store import UsageStore


@pytest_asyncio.fixture
async def store(tmp_path):
    """An opened UsageStore on a temporary SQLite file."""
    usage_store = UsageStore(create_adapter(str(tmp_path / "gateway.db")))
    await usage_store.open()
    yield usage_store
    await usage_store.close()


@pytest.fixture(scope="session")
def rsa_keypair():
    """(private PEM, public PEM) of a throwaway service account key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem
