# streamguard/poller.py

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError
from sqlalchemy import or_, select
from sqlalchemy.orm import Session as DBSession

from streamguard.config import settings
from streamguard.events import SESSION_STARTED, SESSION_STOPPED, SESSION_UPDATED, EventPublisher
from streamguard.mapper import snapshot_to_columns
from streamguard.models import PlaybackSession, Rule, Server, ServerUser
from streamguard.rules import RuleEngine, does_rule_apply_to_user
from streamguard.schemas import SessionOut, SessionSnapshot
from streamguard.tracker import (
    ChainCandidate,
    PauseState,
    accumulate_pause,
    finalize_duration,
    is_watch_complete,
    resume_chain_target,
    utcnow,
)
from streamguard.violations import ViolationService

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    server_id: str
    sessions_seen: int = 0
    started: int = 0
    updated: int = 0
    stopped: int = 0
    violations: int = 0
    malformed: int = 0
    events: List[Tuple[str, dict]] = field(default_factory=list)


def stop_session(session: PlaybackSession, stopped_at: datetime) -> None:
    """Finalize a session exactly once"""
    if session.stopped_at is not None:
        return

    result = finalize_duration(
        session.started_at,
        session.last_paused_at,
        session.paused_duration_ms or 0,
        stopped_at,
    )
    session.stopped_at = stopped_at
    session.state = "stopped"
    session.last_paused_at = None
    session.paused_duration_ms = result.final_paused_duration_ms
    session.duration_ms = result.duration_ms
    session.watched = session.watched or is_watch_complete(session.progress_ms, session.total_duration_ms)


class SessionProcessor:
    """
    One poll cycle for one server: merge the adapter snapshot into session
    rows, then run the rule engine over every still-active session.
    """

    def __init__(
        self,
        rule_engine: RuleEngine = None,
        violation_service: ViolationService = None,
        publisher: EventPublisher = None,
        resume_window: timedelta = None,
        recent_window: timedelta = None,
    ):
        self.rule_engine = rule_engine or RuleEngine()
        self.violation_service = violation_service or ViolationService(publisher=publisher)
        self.publisher = publisher
        self.resume_window = resume_window or timedelta(hours=settings.resume_window_hours)
        self.recent_window = recent_window or timedelta(hours=settings.recent_session_window_hours)

    def process_snapshot(
        self,
        db: DBSession,
        server: Server,
        snapshots: Sequence[SessionSnapshot],
        now: datetime = None,
    ) -> CycleReport:
        now = now or utcnow()
        report = CycleReport(server_id=server.id, sessions_seen=len(snapshots))

        active_rows: Dict[str, PlaybackSession] = {}
        orphans: List[PlaybackSession] = []
        for row in db.scalars(
            select(PlaybackSession)
            .where(PlaybackSession.server_id == server.id)
            .where(PlaybackSession.stopped_at.is_(None))
            .order_by(PlaybackSession.started_at)
        ):
            # At most one active row per key; older extras are stopped below
            if row.session_key in active_rows:
                orphans.append(active_rows[row.session_key])
            active_rows[row.session_key] = row

        touched: List[PlaybackSession] = []
        for snapshot in self._unique_by_key(snapshots):
            existing = active_rows.pop(snapshot.session_key, None)

            # Provider reused the key for new media (next episode)
            if existing is not None and self._media_changed(existing, snapshot):
                stop_session(existing, now)
                db.flush()
                report.stopped += 1
                report.events.append((SESSION_STOPPED, self._payload(existing)))
                existing = None

            if existing is None:
                row = self._start_session(db, server, snapshot, now)
                report.started += 1
                report.events.append((SESSION_STARTED, self._payload(row)))
            else:
                row = existing
                if self._update_session(row, snapshot, now):
                    report.updated += 1
                    report.events.append((SESSION_UPDATED, self._payload(row)))
            touched.append(row)

        for row in orphans + list(active_rows.values()):
            stop_session(row, now)
            report.stopped += 1
            report.events.append((SESSION_STOPPED, self._payload(row)))

        db.commit()
        self._emit(report)

        report.violations = self._evaluate_rules(db, touched, now)
        return report

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    @staticmethod
    def _unique_by_key(snapshots: Sequence[SessionSnapshot]) -> List[SessionSnapshot]:
        """One snapshot per session_key; the last entry wins"""
        by_key: Dict[str, SessionSnapshot] = {}
        for snapshot in snapshots:
            if snapshot.session_key in by_key:
                logger.warning(f"Duplicate session_key {snapshot.session_key} in snapshot, keeping last entry")
            by_key[snapshot.session_key] = snapshot
        return list(by_key.values())

    @staticmethod
    def _media_changed(row: PlaybackSession, snapshot: SessionSnapshot) -> bool:
        return bool(row.rating_key and snapshot.rating_key and row.rating_key != snapshot.rating_key)

    def _resolve_user(self, db: DBSession, server: Server, snapshot: SessionSnapshot) -> ServerUser:
        user = db.scalars(
            select(ServerUser)
            .where(ServerUser.server_id == server.id)
            .where(ServerUser.external_id == snapshot.external_user_id)
        ).first()

        if user is None:
            user = ServerUser(
                server_id=server.id,
                external_id=snapshot.external_user_id,
                username=snapshot.username,
                trust_score=settings.initial_trust_score,
            )
            db.add(user)
            db.flush()
            logger.info(f"New server user {snapshot.username} on server {server.name}")
        elif snapshot.username and user.username != snapshot.username:
            user.username = snapshot.username

        return user

    def _resume_reference(
        self, db: DBSession, user: ServerUser, snapshot: SessionSnapshot, now: datetime
    ) -> Optional[str]:
        if not snapshot.rating_key:
            return None

        cutoff = now - self.resume_window
        previous = db.scalars(
            select(PlaybackSession)
            .where(PlaybackSession.server_user_id == user.id)
            .where(PlaybackSession.rating_key == snapshot.rating_key)
            .where(PlaybackSession.stopped_at.is_not(None))
            .where(PlaybackSession.stopped_at >= cutoff)
            .order_by(PlaybackSession.stopped_at.desc())
        ).first()

        if previous is None:
            return None

        return resume_chain_target(
            ChainCandidate(
                id=previous.id,
                reference_id=previous.reference_id,
                progress_ms=previous.progress_ms,
                watched=previous.watched,
                stopped_at=previous.stopped_at,
            ),
            snapshot.progress_ms,
            cutoff,
        )

    def _start_session(
        self, db: DBSession, server: Server, snapshot: SessionSnapshot, now: datetime
    ) -> PlaybackSession:
        user = self._resolve_user(db, server, snapshot)

        row = PlaybackSession(
            server_id=server.id,
            server_user_id=user.id,
            session_key=snapshot.session_key,
            state=snapshot.state,
            started_at=now,
            last_paused_at=(snapshot.last_paused_at or now) if snapshot.state == "paused" else None,
            paused_duration_ms=0,
            watched=False,
            reference_id=self._resume_reference(db, user, snapshot, now),
            **snapshot_to_columns(snapshot),
        )
        db.add(row)

        user.last_activity_at = now
        db.flush()

        logger.debug(f"Session started: {row.session_key} ({row.media_title}) user={user.username}")
        return row

    def _update_session(self, row: PlaybackSession, snapshot: SessionSnapshot, now: datetime) -> bool:
        """Refresh a row from its snapshot; True when the playback state changed"""
        prev_state = row.state
        new_state = snapshot.state

        pause = accumulate_pause(
            prev_state,
            new_state,
            PauseState(row.last_paused_at, row.paused_duration_ms or 0),
            (snapshot.last_paused_at or now) if new_state == "paused" else now,
        )
        row.last_paused_at = pause.last_paused_at
        row.paused_duration_ms = pause.paused_duration_ms
        row.state = new_state

        for column, value in snapshot_to_columns(snapshot).items():
            setattr(row, column, value)

        if is_watch_complete(row.progress_ms, row.total_duration_ms):
            row.watched = True

        return prev_state != new_state

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _recent_sessions(self, db: DBSession, server_user_id: str, now: datetime) -> List[PlaybackSession]:
        since = now - self.recent_window
        return list(db.scalars(
            select(PlaybackSession)
            .where(PlaybackSession.server_user_id == server_user_id)
            .where(or_(PlaybackSession.stopped_at.is_(None), PlaybackSession.started_at >= since))
        ))

    def _evaluate_rules(self, db: DBSession, sessions: List[PlaybackSession], now: datetime) -> int:
        rules = list(db.scalars(select(Rule).where(Rule.is_active.is_(True))))
        if not rules:
            return 0

        created = 0
        for session in sessions:
            if session.stopped_at is not None:
                continue

            server_user_id = session.server_user_id
            session_id = session.id
            applicable = [r for r in rules if does_rule_apply_to_user(r, server_user_id)]
            if not applicable:
                continue

            recent = self._recent_sessions(db, server_user_id, now)
            results = self.rule_engine.evaluate(session, applicable, recent)

            for result in results:
                if self.violation_service.create_violation(db, server_user_id, session_id, result):
                    created += 1

        return created

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @staticmethod
    def _payload(row: PlaybackSession) -> dict:
        return SessionOut.model_validate(row).model_dump(mode="json")

    def _emit(self, report: CycleReport) -> None:
        if not self.publisher:
            return
        for event_type, payload in report.events:
            self.publisher.publish(event_type, payload)


def parse_snapshots(raw_sessions: Sequence) -> Tuple[List[SessionSnapshot], int]:
    """Validate adapter output; malformed entries are logged and skipped"""
    snapshots: List[SessionSnapshot] = []
    errors = 0
    for item in raw_sessions:
        if isinstance(item, SessionSnapshot):
            snapshots.append(item)
            continue
        try:
            snapshots.append(SessionSnapshot.model_validate(item))
        except ValidationError as e:
            errors += 1
            logger.warning(f"Skipping malformed session snapshot: {e}")
    return snapshots, errors
