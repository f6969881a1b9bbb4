# streamguard/tracker.py

"""
Session lifecycle arithmetic.

Everything here is a pure function over explicit inputs so the pause /
stop / resume rules can be tested without a database or a clock.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

WATCHED_THRESHOLD = 0.8
RESUME_WINDOW = timedelta(hours=24)

_MS = timedelta(milliseconds=1)


def utcnow() -> datetime:
    """Naive UTC, matching what DateTime columns hand back"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def elapsed_ms(start: datetime, end: datetime) -> int:
    return (end - start) // _MS


@dataclass(frozen=True)
class PauseState:
    last_paused_at: Optional[datetime]
    paused_duration_ms: int


@dataclass(frozen=True)
class StopDuration:
    duration_ms: int
    final_paused_duration_ms: int


@dataclass(frozen=True)
class ChainCandidate:
    """The fields of a previous session needed to decide a resume"""
    id: str
    reference_id: Optional[str]
    progress_ms: Optional[int]
    watched: bool
    stopped_at: Optional[datetime]


def accumulate_pause(prev_state: str, new_state: str, current: PauseState, now: datetime) -> PauseState:
    """
    Apply one state transition to the pause accumulator.

    playing -> paused opens a pause interval at `now`; paused -> playing closes
    it and adds its length. Every other pair leaves the state untouched.
    """
    if prev_state == "playing" and new_state == "paused":
        return PauseState(last_paused_at=now, paused_duration_ms=current.paused_duration_ms)

    if prev_state == "paused" and new_state == "playing":
        added = 0
        if current.last_paused_at is not None:
            added = max(0, elapsed_ms(current.last_paused_at, now))
        return PauseState(last_paused_at=None, paused_duration_ms=current.paused_duration_ms + added)

    return current


def finalize_duration(
    started_at: datetime,
    last_paused_at: Optional[datetime],
    paused_duration_ms: int,
    stopped_at: datetime,
) -> StopDuration:
    """Watch time at stop, folding in a pause that is still open"""
    final_paused = paused_duration_ms or 0
    if last_paused_at is not None:
        final_paused += max(0, elapsed_ms(last_paused_at, stopped_at))

    duration = max(0, elapsed_ms(started_at, stopped_at) - final_paused)
    return StopDuration(duration_ms=duration, final_paused_duration_ms=final_paused)


def is_watch_complete(progress_ms: Optional[int], total_duration_ms: Optional[int]) -> bool:
    if progress_ms is None or not total_duration_ms:
        return False
    return progress_ms / total_duration_ms >= WATCHED_THRESHOLD


def resume_chain_target(
    previous: ChainCandidate,
    new_progress_ms: Optional[int],
    cutoff: Optional[datetime] = None,
) -> Optional[str]:
    """
    Id of the chain root a new session should reference, or None.

    A finished watch, a previous session older than `cutoff` (default 24h ago)
    or a start position behind the previous one all begin a new chain. The
    result is always the original session, so chains of any length share one
    root id.
    """
    if cutoff is None:
        cutoff = utcnow() - RESUME_WINDOW

    if previous.watched:
        return None
    if previous.stopped_at is None or previous.stopped_at < cutoff:
        return None
    if (new_progress_ms or 0) < (previous.progress_ms or 0):
        return None

    return previous.reference_id or previous.id
