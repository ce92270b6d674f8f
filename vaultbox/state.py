"""
Vault lock state

``VaultState`` is the single owner of the master key. It moves between two
states:

    Locked --unlock(password)--> Unlocked
    Unlocked --lock() / auto-lock timeout--> Locked
    Unlocked --unlock(password)--> Unlocked (key re-derived from the same salt)

The key is kept in a ``bytearray`` and overwritten with zeros whenever it is
dropped or replaced. Reads (``is_unlocked``, ``get_key``, ``get_status``)
share a reader/writer lock; transitions take it exclusively.

Security Note:
    There is no password verifier. A wrong password unlocks the vault with a
    wrong key, which only shows up later as decryption failures.
"""

import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator

from loguru import logger

from .crypto import SALT_SIZE, derive_key, generate_salt
from .errors import ValidationError, VaultLockedError
from .models import VaultStatus

DEFAULT_AUTO_LOCK = timedelta(minutes=15)
DEFAULT_POLL_INTERVAL = 60.0  # seconds


class ReadWriteLock:
    """
    Many concurrent readers or one exclusive writer.

    Writer-preferring: once a writer is waiting, new readers queue behind it,
    so lock transitions are never starved by a steady stream of reads.
    Not reentrant.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class AutoLockScheduler:
    """
    Background poller that locks the vault after a period of inactivity.

    One scheduler exists per unlock epoch. ``cancel()`` sets the cancellation
    event, which also wakes the poll wait; a cancelled scheduler exits
    without touching the vault.
    """

    def __init__(self, vault: "VaultState", poll_interval: float):
        self._vault = vault
        self._poll_interval = poll_interval
        self._cancelled = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name="vault-auto-lock",
            daemon=True,
        )

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        """Signal the scheduler to stop. Safe to call after it has exited."""
        self._cancelled.set()

    def join(self, timeout: float | None = None) -> None:
        # The scheduler locks the vault from its own thread and must not join itself.
        if threading.current_thread() is not self._thread and self._thread.is_alive():
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._cancelled.wait(self._poll_interval):
            if self._vault._expire_if_idle(self):
                return


class VaultState:
    """
    Lock/unlock state machine and in-memory custody of the master key.

    Construct once at startup and hand the same instance to every consumer.
    """

    def __init__(
        self,
        auto_lock_after: timedelta = DEFAULT_AUTO_LOCK,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        if auto_lock_after <= timedelta(0):
            raise ValueError("auto_lock_after must be positive")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        self._auto_lock_after = auto_lock_after
        self._poll_interval = poll_interval
        self._clock = clock

        self._rw = ReadWriteLock()
        self._unlocked = False
        self._key: bytearray | None = None
        self._salt: bytes | None = None
        self._scheduler: AutoLockScheduler | None = None

        # Written by concurrent readers in get_key(), so guarded separately.
        self._activity_lock = threading.Lock()
        self._last_activity = 0.0
        self._last_activity_at: datetime | None = None

    @property
    def auto_lock_after(self) -> timedelta:
        return self._auto_lock_after

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def unlock(self, password: str) -> None:
        """
        Derive the master key from ``password`` and enter the Unlocked state.

        The first unlock generates the salt; later unlocks (including while
        already unlocked) re-derive from that same salt and restart the
        auto-lock scheduler.

        Raises:
            ValidationError: If the password is empty.
            EncryptionError: If the salt cannot be generated.
        """
        if not password:
            raise ValidationError("Master password is required", field="master_password")

        with self._rw.write():
            if self._salt is None:
                self._salt = generate_salt()
                logger.info("Generated new vault salt")

            key = bytearray(derive_key(password, self._salt))
            previous = self._scheduler
            if previous is not None:
                previous.cancel()
            relock = self._unlocked

            self._wipe_key()
            self._key = key
            self._unlocked = True
            self._touch()

            self._scheduler = AutoLockScheduler(self, self._poll_interval)
            self._scheduler.start()

        if previous is not None:
            previous.join()
        logger.info(
            f"Vault {'re-' if relock else ''}unlocked "
            f"(auto-lock after {self._auto_lock_after.total_seconds():.0f}s idle)"
        )

    def lock(self) -> None:
        """Zero and drop the key and stop the scheduler. Idempotent."""
        with self._rw.write():
            was_unlocked = self._unlocked
            scheduler = self._lock_locked()
        if scheduler is not None:
            scheduler.join()
        if was_unlocked:
            logger.info("Vault locked")

    def close(self) -> None:
        """Shutdown hook: make sure no key material outlives the process."""
        self.lock()

    def _lock_locked(self) -> AutoLockScheduler | None:
        """Perform the Locked transition. Caller holds the write lock."""
        self._wipe_key()
        self._unlocked = False
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None:
            scheduler.cancel()
        return scheduler

    def _wipe_key(self) -> None:
        if self._key is not None:
            self._key[:] = bytes(len(self._key))
            self._key = None

    def _expire_if_idle(self, scheduler: AutoLockScheduler) -> bool:
        """
        Auto-lock check run by ``scheduler``.

        Returns:
            True when the scheduler should exit: either it locked the vault,
            or it is no longer the scheduler of the current unlock epoch.
        """
        with self._rw.write():
            if scheduler is not self._scheduler or not self._unlocked:
                return True
            idle = self._idle_seconds()
            if idle < self._auto_lock_after.total_seconds():
                return False
            self._lock_locked()
        logger.info(f"Vault auto-locked after {idle:.0f}s of inactivity")
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_unlocked(self) -> bool:
        with self._rw.read():
            return self._unlocked

    def get_key(self) -> bytes:
        """
        Return a copy of the master key and record activity.

        Raises:
            VaultLockedError: If the vault is locked.
        """
        with self._rw.read():
            if not self._unlocked:
                raise VaultLockedError("Vault is locked")
            key = bytes(self._key)
            self._touch()
        return key

    def get_status(self) -> VaultStatus:
        with self._rw.read():
            if not self._unlocked:
                return VaultStatus(unlocked=False)
            with self._activity_lock:
                last_activity_at = self._last_activity_at
                idle = self._clock() - self._last_activity
        remaining = max(self._auto_lock_after.total_seconds() - idle, 0.0)
        return VaultStatus(
            unlocked=True,
            last_activity=last_activity_at,
            auto_lock_in=timedelta(seconds=remaining),
        )

    # ------------------------------------------------------------------
    # Salt
    # ------------------------------------------------------------------

    def get_salt(self) -> bytes | None:
        """Return the salt fixing the password-to-key mapping, if generated yet."""
        with self._rw.read():
            return self._salt

    def set_salt(self, salt: bytes) -> None:
        """
        Restore a previously exported salt, e.g. from a backup.

        Raises:
            ValidationError: If the vault is unlocked or the salt is not 16 bytes.
        """
        if len(salt) != SALT_SIZE:
            raise ValidationError(f"Salt must be {SALT_SIZE} bytes", field="salt")
        with self._rw.write():
            if self._unlocked:
                raise ValidationError(
                    "Salt can only be replaced while the vault is locked", field="salt"
                )
            self._salt = bytes(salt)
        logger.info("Vault salt restored")

    # ------------------------------------------------------------------
    # Activity tracking
    # ------------------------------------------------------------------

    def _touch(self) -> None:
        with self._activity_lock:
            self._last_activity = self._clock()
            self._last_activity_at = datetime.now(timezone.utc)

    def _idle_seconds(self) -> float:
        with self._activity_lock:
            return self._clock() - self._last_activity
