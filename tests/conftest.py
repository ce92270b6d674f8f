import threading
import time
from datetime import timedelta

import pytest

from vaultbox.manager import SecretsManager
from vaultbox.state import VaultState
from vaultbox.store import SQLiteSecretStore

PASSWORD = "hunter2"


class FakeClock:
    """Monotonic clock the tests can move forward by hand."""

    def __init__(self, start: float = 1000.0):
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is truthy or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vault(clock):
    """A locked vault whose auto-lock poller runs every 10ms on a fake clock."""
    state = VaultState(
        auto_lock_after=timedelta(minutes=15),
        poll_interval=0.01,
        clock=clock,
    )
    yield state
    state.close()


@pytest.fixture
def store(tmp_path):
    return SQLiteSecretStore(tmp_path / "vault.db")


@pytest.fixture
def manager(vault, store):
    return SecretsManager(vault, store)


@pytest.fixture
def unlocked(vault):
    vault.unlock(PASSWORD)
    return vault
