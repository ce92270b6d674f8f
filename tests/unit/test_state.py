"""Tests for vaultbox.state: lock/unlock transitions, auto-lock and key custody."""

import threading
import time
from datetime import datetime, timedelta

import pytest

from vaultbox.crypto import SALT_SIZE, derive_key
from vaultbox.errors import ValidationError, VaultLockedError
from vaultbox.state import AutoLockScheduler, ReadWriteLock, VaultState

from conftest import PASSWORD, wait_for


@pytest.fixture
def quiet_vault(clock):
    """Vault whose scheduler effectively never polls, for driving auto-lock by hand."""
    state = VaultState(auto_lock_after=timedelta(minutes=15), poll_interval=3600, clock=clock)
    yield state
    state.close()


class TestTransitions:
    def test_starts_locked(self, vault):
        assert vault.is_unlocked() is False
        with pytest.raises(VaultLockedError):
            vault.get_key()

    def test_unlock(self, vault):
        vault.unlock(PASSWORD)
        assert vault.is_unlocked() is True
        assert vault.get_key() == derive_key(PASSWORD, vault.get_salt())

    def test_lock(self, unlocked):
        unlocked.lock()
        assert unlocked.is_unlocked() is False
        with pytest.raises(VaultLockedError):
            unlocked.get_key()

    def test_lock_is_idempotent(self, vault):
        vault.lock()
        vault.lock()
        assert vault.is_unlocked() is False

    def test_empty_password_rejected(self, vault):
        with pytest.raises(ValidationError):
            vault.unlock("")
        assert vault.is_unlocked() is False
        assert vault.get_salt() is None

    def test_salt_generated_once(self, vault):
        vault.unlock(PASSWORD)
        salt = vault.get_salt()
        assert len(salt) == SALT_SIZE
        vault.lock()
        vault.unlock(PASSWORD)
        assert vault.get_salt() == salt

    def test_relock_with_same_password_gives_same_key(self, unlocked):
        key = unlocked.get_key()
        unlocked.lock()
        unlocked.unlock(PASSWORD)
        assert unlocked.get_key() == key

    def test_unlock_while_unlocked_replaces_key(self, unlocked):
        salt = unlocked.get_salt()
        unlocked.unlock("another password")
        assert unlocked.is_unlocked() is True
        assert unlocked.get_salt() == salt
        assert unlocked.get_key() == derive_key("another password", salt)

    def test_wrong_password_is_accepted(self, unlocked):
        # No verifier: a wrong password only surfaces later as decryption failures.
        good_key = unlocked.get_key()
        unlocked.lock()
        unlocked.unlock("not the password")
        assert unlocked.is_unlocked() is True
        assert unlocked.get_key() != good_key


class TestKeyZeroing:
    def test_lock_zeroes_key_buffer(self, unlocked):
        buffer = unlocked._key
        assert any(buffer)
        unlocked.lock()
        assert unlocked._key is None
        assert bytes(buffer) == bytes(len(buffer))

    def test_reunlock_zeroes_previous_buffer(self, unlocked):
        buffer = unlocked._key
        unlocked.unlock("other")
        assert unlocked._key is not buffer
        assert bytes(buffer) == bytes(len(buffer))

    def test_get_key_returns_independent_copy(self, unlocked):
        key = unlocked.get_key()
        unlocked.lock()
        assert key != bytes(len(key))


class TestAutoLock:
    def test_locks_after_inactivity(self, unlocked, clock):
        clock.advance(15 * 60)
        assert wait_for(lambda: not unlocked.is_unlocked())
        with pytest.raises(VaultLockedError):
            unlocked.get_key()

    def test_scheduler_exits_after_auto_lock(self, unlocked, clock):
        scheduler = unlocked._scheduler
        clock.advance(15 * 60)
        assert wait_for(lambda: not scheduler.is_alive())
        assert unlocked._scheduler is None

    def test_stays_unlocked_before_timeout(self, unlocked, clock):
        clock.advance(15 * 60 - 1)
        time.sleep(0.1)
        assert unlocked.is_unlocked() is True

    def test_get_key_resets_inactivity(self, unlocked, clock):
        clock.advance(10 * 60)
        unlocked.get_key()
        clock.advance(10 * 60)
        time.sleep(0.1)
        assert unlocked.is_unlocked() is True

        clock.advance(5 * 60)
        assert wait_for(lambda: not unlocked.is_unlocked())

    def test_expire_if_idle_not_yet_idle(self, quiet_vault, clock):
        quiet_vault.unlock(PASSWORD)
        assert quiet_vault._expire_if_idle(quiet_vault._scheduler) is False
        assert quiet_vault.is_unlocked() is True

    def test_expire_if_idle_locks(self, quiet_vault, clock):
        quiet_vault.unlock(PASSWORD)
        clock.advance(15 * 60)
        assert quiet_vault._expire_if_idle(quiet_vault._scheduler) is True
        assert quiet_vault.is_unlocked() is False

    def test_stale_scheduler_cannot_lock(self, quiet_vault, clock):
        quiet_vault.unlock(PASSWORD)
        stale = AutoLockScheduler(quiet_vault, poll_interval=3600)
        clock.advance(15 * 60)
        assert quiet_vault._expire_if_idle(stale) is True
        assert quiet_vault.is_unlocked() is True


class TestSchedulerLifecycle:
    def test_unlock_starts_one_scheduler(self, unlocked):
        scheduler = unlocked._scheduler
        assert scheduler is not None
        assert scheduler.is_alive()

    def test_reunlock_replaces_scheduler(self, unlocked):
        first = unlocked._scheduler
        unlocked.unlock(PASSWORD)
        second = unlocked._scheduler
        assert second is not first
        assert first.cancelled
        assert not first.is_alive()
        assert second.is_alive()

    def test_lock_stops_scheduler(self, unlocked):
        scheduler = unlocked._scheduler
        unlocked.lock()
        assert unlocked._scheduler is None
        assert scheduler.cancelled
        assert not scheduler.is_alive()

    def test_lock_wakes_long_poll(self, quiet_vault):
        quiet_vault.unlock(PASSWORD)
        scheduler = quiet_vault._scheduler
        started = time.monotonic()
        quiet_vault.lock()
        assert not scheduler.is_alive()
        assert time.monotonic() - started < 5

    def test_cancel_after_exit_is_harmless(self, unlocked):
        scheduler = unlocked._scheduler
        unlocked.lock()
        scheduler.cancel()
        scheduler.join()
        assert not scheduler.is_alive()


class TestStatus:
    def test_locked_status(self, vault):
        status = vault.get_status()
        assert status.unlocked is False
        assert status.last_activity is None
        assert status.auto_lock_in is None
        assert status.to_dict() == {"unlocked": False}

    def test_unlocked_status(self, quiet_vault):
        quiet_vault.unlock(PASSWORD)
        status = quiet_vault.get_status()
        assert status.unlocked is True
        assert isinstance(status.last_activity, datetime)
        assert status.auto_lock_in == timedelta(minutes=15)

    def test_remaining_time_counts_down(self, quiet_vault, clock):
        quiet_vault.unlock(PASSWORD)
        clock.advance(5 * 60)
        assert quiet_vault.get_status().auto_lock_in == timedelta(minutes=10)

    def test_remaining_time_clamped_at_zero(self, quiet_vault, clock):
        quiet_vault.unlock(PASSWORD)
        clock.advance(20 * 60)
        assert quiet_vault.get_status().auto_lock_in == timedelta(0)

    def test_status_does_not_count_as_activity(self, quiet_vault, clock):
        quiet_vault.unlock(PASSWORD)
        clock.advance(60)
        quiet_vault.get_status()
        assert quiet_vault.get_status().auto_lock_in == timedelta(minutes=14)

    def test_status_dict(self, quiet_vault, clock):
        quiet_vault.unlock(PASSWORD)
        clock.advance(30)
        status = quiet_vault.get_status().to_dict()
        assert status["unlocked"] is True
        assert status["auto_lock_in"] == 15 * 60 - 30
        datetime.fromisoformat(status["last_activity"])


class TestSalt:
    def test_no_salt_before_first_unlock(self, vault):
        assert vault.get_salt() is None

    def test_set_salt_while_locked(self, vault):
        salt = b"s" * SALT_SIZE
        vault.set_salt(salt)
        vault.unlock(PASSWORD)
        assert vault.get_salt() == salt
        assert vault.get_key() == derive_key(PASSWORD, salt)

    def test_set_salt_wrong_length(self, vault):
        with pytest.raises(ValidationError):
            vault.set_salt(b"short")

    def test_set_salt_while_unlocked(self, unlocked):
        with pytest.raises(ValidationError):
            unlocked.set_salt(b"s" * SALT_SIZE)


class TestConstruction:
    def test_rejects_non_positive_auto_lock(self):
        with pytest.raises(ValueError):
            VaultState(auto_lock_after=timedelta(0))

    def test_rejects_non_positive_poll_interval(self):
        with pytest.raises(ValueError):
            VaultState(poll_interval=0)


class TestConcurrency:
    def test_get_key_racing_lock_never_sees_torn_key(self, unlocked):
        expected = unlocked.get_key()
        workers = 16
        barrier = threading.Barrier(workers + 1)
        results = []
        results_lock = threading.Lock()

        def reader():
            barrier.wait()
            for _ in range(200):
                try:
                    outcome = unlocked.get_key()
                except VaultLockedError as err:
                    outcome = err
                with results_lock:
                    results.append(outcome)

        threads = [threading.Thread(target=reader) for _ in range(workers)]
        for t in threads:
            t.start()
        barrier.wait()
        unlocked.lock()
        for t in threads:
            t.join()

        assert len(results) == workers * 200
        for outcome in results:
            assert outcome == expected or isinstance(outcome, VaultLockedError)
        assert unlocked.is_unlocked() is False

    def test_concurrent_unlocks_leave_one_live_scheduler(self, vault):
        threads = [
            threading.Thread(target=vault.unlock, args=(PASSWORD,)) for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert vault.is_unlocked() is True
        assert vault._scheduler.is_alive()
        assert wait_for(lambda: sum(
            1 for t in threading.enumerate() if t.name == "vault-auto-lock"
        ) == 1)


class TestReadWriteLock:
    def test_readers_share(self):
        rw = ReadWriteLock()
        inside = threading.Event()
        release = threading.Event()

        def first_reader():
            with rw.read():
                inside.set()
                release.wait(5)

        t = threading.Thread(target=first_reader)
        t.start()
        assert inside.wait(5)
        entered = threading.Event()

        def second_reader():
            with rw.read():
                entered.set()

        t2 = threading.Thread(target=second_reader)
        t2.start()
        assert entered.wait(5)
        release.set()
        t.join()
        t2.join()

    def test_writer_waits_for_readers(self):
        rw = ReadWriteLock()
        inside = threading.Event()
        release = threading.Event()
        written = threading.Event()

        def reader():
            with rw.read():
                inside.set()
                release.wait(5)

        def writer():
            with rw.write():
                written.set()

        r = threading.Thread(target=reader)
        r.start()
        assert inside.wait(5)
        w = threading.Thread(target=writer)
        w.start()
        assert not written.wait(0.1)
        release.set()
        assert written.wait(5)
        r.join()
        w.join()

    def test_waiting_writer_blocks_new_readers(self):
        rw = ReadWriteLock()
        inside = threading.Event()
        release = threading.Event()
        order = []

        def first_reader():
            with rw.read():
                inside.set()
                release.wait(5)

        def writer():
            with rw.write():
                order.append("writer")

        def late_reader():
            with rw.read():
                order.append("reader")

        r = threading.Thread(target=first_reader)
        r.start()
        assert inside.wait(5)
        w = threading.Thread(target=writer)
        w.start()
        assert wait_for(lambda: rw._writers_waiting == 1)
        late = threading.Thread(target=late_reader)
        late.start()
        time.sleep(0.05)
        assert order == []
        release.set()
        for t in (r, w, late):
            t.join()
        assert order == ["writer", "reader"]
