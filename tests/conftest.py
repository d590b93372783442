"""
Shared fixtures: a two-tier in-memory token store on its own bus, and
signing keys for credentials and wallet signatures.
"""
import pytest

from dope_auth.bus import SessionBus
from dope_auth.storage import MemoryBackend, TokenStore

from tests.fakes import EvmSigner, Notarizer


@pytest.fixture
def bus():
    return SessionBus()


@pytest.fixture
def store(bus):
    return TokenStore(MemoryBackend(), MemoryBackend(), bus=bus)


@pytest.fixture(scope="session")
def notarizer():
    return Notarizer()


@pytest.fixture(scope="session")
def evm_signer():
    return EvmSigner()
