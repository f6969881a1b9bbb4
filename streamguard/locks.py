# streamguard/locks.py

"""
Named mutual exclusion scoped to the enclosing database transaction.

acquire(db, name) blocks until the lock is held and returns; the lock is
released when `db` commits or rolls back. Which mechanism is used depends on
the SQL dialect behind the session:

- postgresql: pg_advisory_xact_lock on a 64-bit hash of the name
- sqlite: a per-name threading.Lock in this process (SQLite has one writer anyway)
- anything else (mysql): SELECT ... FOR UPDATE on a row of lock_keys
"""

import hashlib
import logging
import threading
from typing import Dict

from sqlalchemy import event, select, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session as DBSession

from streamguard.config import settings
from streamguard.models import LockKey

logger = logging.getLogger(__name__)


class LockAcquisitionError(Exception):
    """The lock could not be taken within the configured timeout"""


def lock_name(*parts: str) -> str:
    return hashlib.sha256(":".join(parts).encode("utf-8")).hexdigest()[:32]


def lock_key_int64(name: str) -> int:
    """Signed 64-bit key for advisory lock functions"""
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class TransactionLock:
    def acquire(self, db: DBSession, name: str) -> None:
        raise NotImplementedError


class PostgresAdvisoryLock(TransactionLock):
    def __init__(self, timeout_seconds: int = None):
        self.timeout_seconds = timeout_seconds or settings.lock_timeout_seconds

    def acquire(self, db: DBSession, name: str) -> None:
        try:
            db.execute(text(f"SET LOCAL lock_timeout = '{int(self.timeout_seconds)}s'"))
            db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": lock_key_int64(name)})
        except OperationalError as e:
            raise LockAcquisitionError(f"advisory lock {name} not acquired: {e}") from e


class RowLock(TransactionLock):
    """Row-level lock on lock_keys; InnoDB releases it at commit/rollback"""

    def acquire(self, db: DBSession, name: str) -> None:
        try:
            if db.get(LockKey, name) is None:
                try:
                    with db.begin_nested():
                        db.add(LockKey(key=name))
                except IntegrityError:
                    # Another transaction created the row first
                    pass

            db.execute(select(LockKey.key).where(LockKey.key == name).with_for_update()).first()
        except OperationalError as e:
            raise LockAcquisitionError(f"row lock {name} not acquired: {e}") from e


class ProcessLocalLock(TransactionLock):
    """In-process lock released by the session's commit/rollback events"""

    def __init__(self, timeout_seconds: int = None):
        self.timeout_seconds = timeout_seconds or settings.lock_timeout_seconds
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._registry_lock:
            if name not in self._locks:
                self._locks[name] = threading.Lock()
            return self._locks[name]

    def acquire(self, db: DBSession, name: str) -> None:
        lock = self._lock_for(name)
        if not lock.acquire(timeout=self.timeout_seconds):
            raise LockAcquisitionError(f"process lock {name} not acquired")

        db.info.setdefault(_HELD_LOCKS, []).append(lock)

        # One listener per session, however many locks it takes
        if not event.contains(db, "after_transaction_end", _release_held_locks):
            event.listen(db, "after_transaction_end", _release_held_locks)


_HELD_LOCKS = "streamguard_process_locks"


def _release_held_locks(session: DBSession, transaction) -> None:
    # Savepoints end inside the transaction; only the root ends the locks
    if transaction.parent is not None:
        return
    held = session.info.get(_HELD_LOCKS)
    while held:
        held.pop().release()


_process_local = ProcessLocalLock()


def lock_for_session(db: DBSession) -> TransactionLock:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return PostgresAdvisoryLock()
    if dialect == "sqlite":
        return _process_local
    return RowLock()
