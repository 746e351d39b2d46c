"""
Shared fixtures. Log output goes to a per-test file so nothing lands in the
user's real ~/.local/state/credvault log.
"""
import pytest
from argon2 import PasswordHasher

from credvault.accounts import AccountStore
from credvault.logging import configure
from credvault.storage import MemoryBlobStore
from credvault.vault import VaultStore

PASSWORD = "correct horse battery staple"


@pytest.fixture(autouse=True)
def _isolate_logs(tmp_path, monkeypatch):
    log_path = tmp_path / "logs" / "credvault.log"
    monkeypatch.setenv("CREDVAULT_LOG", str(log_path))
    monkeypatch.delenv("CREDVAULT_HOME", raising=False)
    monkeypatch.delenv("CREDVAULT_EMAIL", raising=False)
    configure(debug=False, log_path=log_path)
    yield


@pytest.fixture
def blobs():
    return MemoryBlobStore()


@pytest.fixture
def store(blobs):
    return VaultStore(blobs, "acct-1")


@pytest.fixture
def unlocked(store):
    store.unlock(PASSWORD)
    yield store
    store.lock()


@pytest.fixture
def fast_hasher():
    """Argon2id with minimal cost so account tests stay quick."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def accounts(blobs, fast_hasher):
    return AccountStore(blobs, hasher=fast_hasher)
