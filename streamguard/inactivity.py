# streamguard/inactivity.py

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from streamguard.models import PlaybackSession, Rule, ServerUser, Violation
from streamguard.rules import RuleEngine
from streamguard.schemas import InactiveUserParams, parse_rule_params
from streamguard.tracker import utcnow
from streamguard.violations import ViolationService

logger = logging.getLogger(__name__)


class InactivityScanner:
    """
    Periodic check for users who have not started a stream in `inactiveDays`.

    Each flagged user's most recent session becomes the triggering session,
    and the violation goes through the normal dedup-gated path.
    """

    def __init__(self, rule_engine: RuleEngine = None, violation_service: ViolationService = None):
        self.rule_engine = rule_engine or RuleEngine()
        self.violation_service = violation_service or ViolationService()

    def scan(self, db: DBSession, now: datetime = None) -> int:
        now = now or utcnow()
        rules = list(db.scalars(
            select(Rule)
            .where(Rule.is_active.is_(True))
            .where(Rule.type == "inactive_user")
        ))

        created = 0
        for rule in rules:
            rule_id = rule.id
            try:
                created += self._scan_rule(db, rule, now)
            except (SQLAlchemyError, ValidationError, ValueError) as e:
                db.rollback()
                logger.error(f"Inactivity scan failed for rule {rule_id}: {e}")

        if created:
            logger.info(f"Inactivity scan flagged {created} users")
        return created

    def _scan_rule(self, db: DBSession, rule: Rule, now: datetime) -> int:
        params: InactiveUserParams = parse_rule_params(rule.type, rule.params)
        inactive_days = int(params.inactive_days)
        if inactive_days <= 0:
            return 0

        threshold = now - timedelta(days=inactive_days)
        stmt = (
            select(ServerUser)
            .where(ServerUser.last_activity_at.is_not(None))
            .where(ServerUser.last_activity_at <= threshold)
        )
        if rule.server_user_id:
            stmt = stmt.where(ServerUser.id == rule.server_user_id)

        users = list(db.scalars(stmt))
        if not users:
            return 0

        user_ids = [u.id for u in users]
        acknowledged = self._acknowledged_activity(db, rule.id, user_ids) if params.sticky_acknowledgement else {}
        latest_sessions = self._latest_session_ids(db, user_ids)
        candidates = [(u.id, u.last_activity_at) for u in users]

        created = 0
        for user_id, last_activity_at in candidates:
            session_id = latest_sessions.get(user_id)
            if session_id is None:
                continue

            result = self.rule_engine.evaluate_inactive_user(
                rule, last_activity_at, now, acknowledged.get(user_id)
            )
            if result is None:
                continue

            if self.violation_service.create_violation(db, user_id, session_id, result):
                created += 1

        return created

    @staticmethod
    def _acknowledged_activity(db: DBSession, rule_id: str, user_ids: List[str]) -> Dict[str, Optional[str]]:
        """lastActivityAt recorded on each user's most recent acknowledged violation"""
        rows = db.scalars(
            select(Violation)
            .where(Violation.rule_id == rule_id)
            .where(Violation.rule_type == "inactive_user")
            .where(Violation.acknowledged_at.is_not(None))
            .where(Violation.server_user_id.in_(user_ids))
            .order_by(Violation.created_at.desc())
        )

        out: Dict[str, Optional[str]] = {}
        for violation in rows:
            if violation.server_user_id not in out:
                data = violation.data if isinstance(violation.data, dict) else {}
                out[violation.server_user_id] = data.get("lastActivityAt")
        return out

    @staticmethod
    def _latest_session_ids(db: DBSession, user_ids: List[str]) -> Dict[str, str]:
        rows = db.execute(
            select(PlaybackSession.server_user_id, PlaybackSession.id)
            .where(PlaybackSession.server_user_id.in_(user_ids))
            .order_by(PlaybackSession.started_at.desc())
        )

        out: Dict[str, str] = {}
        for server_user_id, session_id in rows:
            out.setdefault(server_user_id, session_id)
        return out
