# streamguard/api.py

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import func, select
from sqlalchemy.orm import Session as DBSession
from typing import List
from streamguard.database import get_db
from streamguard.models import PlaybackSession, Server, Violation
from streamguard.schemas import CycleResponse, ViolationOut
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/servers/{server_id}/snapshot", response_model=CycleResponse)
async def push_snapshot(server_id: str, request: Request, db: DBSession = Depends(get_db)) -> CycleResponse:
    """
    Receive a full 'now playing' list from a push-mode adapter.
    Accepts a list, a single session, or {"sessions": [...]}.
    """
    if db.get(Server, server_id) is None:
        raise HTTPException(status_code=404, detail="Server not found")

    body = await request.json()

    # Normalize to list
    if isinstance(body, dict):
        sessions = body["sessions"] if "sessions" in body else [body]
    elif isinstance(body, list):
        sessions = body
    else:
        return CycleResponse(status="error", processed=0, errors=1)

    report = request.app.state.monitor.run_server_cycle(server_id, sessions)
    if report is None:
        return CycleResponse(status="skipped", processed=0, errors=0)

    return CycleResponse(
        status="ok" if report.malformed == 0 else "partial",
        processed=report.sessions_seen,
        errors=report.malformed,
    )


@router.get("/api/violations", response_model=List[ViolationOut])
async def list_violations(
    acknowledged: bool = False,
    limit: int = 100,
    db: DBSession = Depends(get_db),
) -> List[ViolationOut]:
    stmt = select(Violation).order_by(Violation.created_at.desc()).limit(min(limit, 500))
    if acknowledged:
        stmt = stmt.where(Violation.acknowledged_at.is_not(None))
    else:
        stmt = stmt.where(Violation.acknowledged_at.is_(None))
    return [ViolationOut.model_validate(v) for v in db.scalars(stmt)]


@router.post("/api/violations/{violation_id}/acknowledge", response_model=ViolationOut)
async def acknowledge_violation(
    violation_id: str,
    request: Request,
    db: DBSession = Depends(get_db),
) -> ViolationOut:
    violation = request.app.state.violation_service.acknowledge(db, violation_id)
    if violation is None:
        raise HTTPException(status_code=404, detail="Violation not found")
    return ViolationOut.model_validate(violation)


@router.get("/health")
async def health_check():
    """Simple health check endpoint"""
    return {"status": "healthy"}


@router.get("/stats/active")
async def active_sessions_count(db: DBSession = Depends(get_db)):
    """Quick endpoint to check current active sessions"""
    rows = db.execute(
        select(PlaybackSession.server_id, PlaybackSession.platform, func.count())
        .where(PlaybackSession.stopped_at.is_(None))
        .group_by(PlaybackSession.server_id, PlaybackSession.platform)
    ).all()

    return {
        "active_sessions": sum(count for _, _, count in rows),
        "by_server": count_by_key(rows, 0),
        "by_platform": count_by_key(rows, 1),
    }


def count_by_key(rows: list, index: int) -> dict:
    """Helper to sum grouped counts by one of the group columns"""
    counts = {}
    for row in rows:
        key = row[index] or "unknown"
        counts[key] = counts.get(key, 0) + row[2]
    return counts
