"""Shared fixtures: backends, collaborators, a wired marketplace and a PGP key."""

import pytest

import pgpy
from pgpy.constants import (
    CompressionAlgorithm,
    HashAlgorithm,
    KeyFlags,
    PubKeyAlgorithm,
    SymmetricKeyAlgorithm,
)

from shadowbounty_backend import InMemoryBackend, SQLiteBackend
from shadowbounty_content import InMemoryContentStore, PGPEncryptionGateway
from shadowbounty_core import build_marketplace
from shadowbounty_custody import InMemoryCustody


ORG = "0xAbCdEf0000000000000000000000000000000001"
ORG_CANON = ORG.lower()
WHISTLEBLOWER_1 = "0x1111111111111111111111111111111111111111"
WHISTLEBLOWER_2 = "0x2222222222222222222222222222222222222222"
TOKEN = "0x5425890298aed601595a70ab815c96711a31bc65"


def make_backend(kind, tmp_path):
    if kind == "sqlite":
        return SQLiteBackend(str(tmp_path / "shadowbounty-test.db"))
    return InMemoryBackend()


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    return make_backend(request.param, tmp_path)


@pytest.fixture
def custody():
    return InMemoryCustody()


@pytest.fixture
def content_store():
    return InMemoryContentStore()


@pytest.fixture
def sleeps():
    """Records backoff delays instead of sleeping."""
    return []


@pytest.fixture
def market(backend, content_store, custody, sleeps):
    return build_marketplace(
        backend,
        content_store,
        custody,
        PGPEncryptionGateway(),
        allow_cancellation=True,
        retry_attempts=3,
        retry_base_delay=0.5,
        sleep=sleeps.append,
    )


@pytest.fixture(scope="session")
def pgp_private_key():
    key = pgpy.PGPKey.new(PubKeyAlgorithm.RSAEncryptOrSign, 2048)
    uid = pgpy.PGPUID.new("Acme Security Desk", email="security@acme.test")
    key.add_uid(
        uid,
        usage={KeyFlags.Sign, KeyFlags.EncryptCommunications, KeyFlags.EncryptStorage},
        hashes=[HashAlgorithm.SHA256],
        ciphers=[SymmetricKeyAlgorithm.AES256],
        compression=[CompressionAlgorithm.ZLIB, CompressionAlgorithm.Uncompressed],
    )
    return key


@pytest.fixture(scope="session")
def pgp_public_armor(pgp_private_key):
    return str(pgp_private_key.pubkey)


def decrypt(private_key, blob: bytes) -> str:
    message = pgpy.PGPMessage.from_blob(blob.decode("utf-8"))
    plain = private_key.decrypt(message).message
    return plain.decode("utf-8") if isinstance(plain, (bytes, bytearray)) else plain
