# streamguard/violations.py

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from streamguard.dedup import ViolationDeduplicator
from streamguard.events import VIOLATION_CREATED, EventPublisher
from streamguard.locks import LockAcquisitionError
from streamguard.models import ServerUser, Violation
from streamguard.rules import EvaluationResult, get_trust_score_penalty
from streamguard.schemas import ViolationOut
from streamguard.tracker import utcnow

logger = logging.getLogger(__name__)


def apply_trust_penalty(db: DBSession, server_user_id: str, penalty: int) -> None:
    """Single UPDATE so concurrent violations for one user never lose a decrement"""
    if penalty <= 0:
        return
    lowered = ServerUser.trust_score - penalty
    stmt = (
        update(ServerUser)
        .where(ServerUser.id == server_user_id)
        .values(trust_score=case((lowered < 0, 0), else_=lowered))
        .execution_options(synchronize_session=False)
    )
    db.execute(stmt)


class ViolationService:
    """
    The only way violations get written.

    Candidate -> unlocked dedup check -> locked dedup check -> insert + trust
    penalty in one transaction. Any failure discards the candidate for this
    cycle; the next poll re-evaluates from current state.
    """

    def __init__(self, deduplicator: ViolationDeduplicator = None, publisher: EventPublisher = None):
        self.deduplicator = deduplicator or ViolationDeduplicator()
        self.publisher = publisher

    def create_violation(
        self,
        db: DBSession,
        server_user_id: str,
        session_id: str,
        result: EvaluationResult,
    ) -> Optional[Violation]:
        rule = result.rule
        rule_type = rule.type
        related = result.related_session_ids

        try:
            if self.deduplicator.is_duplicate(db, server_user_id, rule_type, session_id, related):
                db.rollback()
                logger.debug(f"Duplicate {rule_type} for session {session_id}, skipped")
                return None

            # Close the read transaction so the locked check sees fresh rows
            db.rollback()

            if self.deduplicator.is_duplicate_locked(db, server_user_id, rule_type, session_id, related):
                db.rollback()
                logger.debug(f"Duplicate {rule_type} for session {session_id} under lock, skipped")
                return None

            violation = Violation(
                rule_id=rule.id,
                rule_type=rule_type,
                server_user_id=server_user_id,
                session_id=session_id,
                severity=result.severity,
                data=result.data,
            )
            db.add(violation)
            apply_trust_penalty(db, server_user_id, get_trust_score_penalty(result.severity))
            db.commit()

        except LockAcquisitionError as e:
            db.rollback()
            logger.warning(f"Violation lock unavailable, discarding {rule_type} for session {session_id}: {e}")
            return None
        except IntegrityError:
            db.rollback()
            logger.info(f"Unacknowledged {rule_type} already recorded for session {session_id}")
            return None
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Violation creation failed for {rule_type} on session {session_id}: {e}")
            return None

        logger.info(f"Violation created: {rule_type} ({result.severity}) user={server_user_id} session={session_id}")

        if self.publisher:
            payload = ViolationOut.model_validate(violation).model_dump(mode="json")
            self.publisher.publish(VIOLATION_CREATED, payload)

        return violation

    def acknowledge(self, db: DBSession, violation_id: str, now: datetime = None) -> Optional[Violation]:
        violation = db.get(Violation, violation_id)
        if violation is None:
            return None

        if violation.acknowledged_at is None:
            violation.acknowledged_at = now or utcnow()
            db.commit()
            logger.info(f"Violation {violation_id} acknowledged")

        return violation
