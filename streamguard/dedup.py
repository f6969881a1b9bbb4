# streamguard/dedup.py

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session as DBSession

from streamguard.config import settings
from streamguard.locks import TransactionLock, lock_for_session, lock_name
from streamguard.models import Violation
from streamguard.rules import is_multi_session_rule
from streamguard.tracker import utcnow

logger = logging.getLogger(__name__)


def violation_session_ids(violation) -> set:
    """The triggering session plus everything the violation listed as related"""
    ids = {violation.session_id}
    data = violation.data if isinstance(violation.data, dict) else {}
    ids.update(data.get("relatedSessionIds") or [])
    return ids


def matches_existing(
    existing: Iterable,
    rule_type: str,
    triggering_session_id: str,
    related_session_ids: Sequence[str],
) -> bool:
    """
    Single-session rule types: duplicate iff the same session already triggered.
    Multi-session rule types: duplicate iff the session sets overlap, so
    sessions that start together converge on one violation in any order.
    """
    if not is_multi_session_rule(rule_type):
        return any(v.session_id == triggering_session_id for v in existing)

    candidate = {triggering_session_id, *related_session_ids}
    return any(candidate & violation_session_ids(v) for v in existing)


class ViolationDeduplicator:
    def __init__(
        self,
        window: timedelta = None,
        lock_factory: Callable[[DBSession], TransactionLock] = lock_for_session,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.window = window or timedelta(hours=settings.dedup_window_hours)
        self.lock_factory = lock_factory
        self.clock = clock

    def _recent_unacknowledged(self, db: DBSession, server_user_id: str, rule_type: str) -> List[Violation]:
        since = self.clock() - self.window
        stmt = (
            select(Violation)
            .where(Violation.server_user_id == server_user_id)
            .where(Violation.rule_type == rule_type)
            .where(Violation.acknowledged_at.is_(None))
            .where(Violation.created_at >= since)
        )
        return list(db.scalars(stmt))

    def is_duplicate(
        self,
        db: DBSession,
        server_user_id: str,
        rule_type: str,
        triggering_session_id: str,
        related_session_ids: Optional[Sequence[str]] = None,
    ) -> bool:
        """Unlocked check, used to skip obvious duplicates cheaply"""
        existing = self._recent_unacknowledged(db, server_user_id, rule_type)
        return matches_existing(existing, rule_type, triggering_session_id, related_session_ids or [])

    def is_duplicate_locked(
        self,
        db: DBSession,
        server_user_id: str,
        rule_type: str,
        triggering_session_id: str,
        related_session_ids: Optional[Sequence[str]] = None,
    ) -> bool:
        """
        Write-path check. For multi-session rule types the (user, rule type)
        lock is taken first and held until `db` commits, serializing
        check-then-insert across racing evaluators. Single-session types do
        not lock; the storage uniqueness constraint backs them up.

        Raises LockAcquisitionError when the lock cannot be taken.
        """
        if is_multi_session_rule(rule_type):
            self.lock_factory(db).acquire(db, lock_name(server_user_id, rule_type))
            logger.debug(f"Holding violation lock for user={server_user_id} type={rule_type}")

        return self.is_duplicate(db, server_user_id, rule_type, triggering_session_id, related_session_ids)
