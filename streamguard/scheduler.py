# streamguard/scheduler.py

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import select
from sqlalchemy.orm import Session as DBSession

from streamguard.config import settings
from streamguard.database import SessionLocal
from streamguard.inactivity import InactivityScanner
from streamguard.models import Server
from streamguard.poller import CycleReport, SessionProcessor, parse_snapshots

logger = logging.getLogger(__name__)

INACTIVITY_JOB_ID = "inactivity_scan"


class SnapshotSource(Protocol):
    """Media-server adapter: returns the normalized 'now playing' list for a server"""

    def fetch_sessions(self, server: Server) -> Sequence[dict]:
        ...


def poll_job_id(server_id: str) -> str:
    return f"poll:{server_id}"


class MonitorScheduler:
    """
    Owns the timers: one poll job per enabled server and one inactivity job.

    Cycles for the same server never overlap. APScheduler skips a run whose
    previous instance is still going (max_instances=1), and a per-server lock
    makes manual or pushed cycles skip too.
    """

    def __init__(
        self,
        processor: SessionProcessor,
        scanner: InactivityScanner = None,
        sources: Dict[str, SnapshotSource] = None,
        session_factory: Callable[[], DBSession] = SessionLocal,
        scheduler: BackgroundScheduler = None,
    ):
        self.processor = processor
        self.scanner = scanner
        self.sources = sources or {}
        self.session_factory = session_factory
        self.scheduler = scheduler or BackgroundScheduler()
        self._cycle_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.refresh_servers()

        if self.scanner and settings.inactivity_enabled:
            self.scheduler.add_job(
                self.run_inactivity_scan,
                trigger="interval",
                hours=settings.inactivity_interval_hours,
                id=INACTIVITY_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                next_run_time=datetime.now(),
            )

        self.scheduler.start()
        logger.info("Monitor scheduler started")

    def stop(self) -> None:
        """Let in-flight cycles finish, then halt all timers"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
        logger.info("Monitor scheduler stopped")

    def refresh_servers(self) -> List[str]:
        """Sync poll jobs with the servers table; returns ids being polled"""
        db = self.session_factory()
        try:
            servers = list(db.scalars(select(Server).where(Server.enabled.is_(True))))
            wanted = {s.id: s.poll_interval_seconds or settings.default_poll_interval_seconds for s in servers}
        finally:
            db.close()

        for job in self.scheduler.get_jobs():
            if job.id.startswith("poll:") and job.id[len("poll:"):] not in wanted:
                self.scheduler.remove_job(job.id)
                logger.info(f"Stopped polling server {job.id[len('poll:'):]}")

        for server_id, interval in wanted.items():
            self.scheduler.add_job(
                self.run_server_cycle,
                trigger="interval",
                seconds=interval,
                args=[server_id],
                id=poll_job_id(server_id),
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

        logger.info(f"Polling {len(wanted)} servers")
        return list(wanted)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def _cycle_lock(self, server_id: str) -> threading.Lock:
        with self._registry_lock:
            if server_id not in self._cycle_locks:
                self._cycle_locks[server_id] = threading.Lock()
            return self._cycle_locks[server_id]

    def run_server_cycle(
        self,
        server_id: str,
        snapshots: Optional[Sequence] = None,
    ) -> Optional[CycleReport]:
        """
        Fetch (or take pushed) snapshots for one server and process them.

        Returns None when the cycle was skipped or failed. Failures are logged
        and scoped to this server.
        """
        lock = self._cycle_lock(server_id)
        if not lock.acquire(blocking=False):
            logger.warning(f"Poll cycle for server {server_id} still running, skipping")
            return None

        try:
            db = self.session_factory()
            try:
                server = db.get(Server, server_id)
                if server is None or not server.enabled:
                    logger.debug(f"Server {server_id} missing or disabled, skipping")
                    return None

                if snapshots is None:
                    source = self.sources.get(server.type)
                    if source is None:
                        logger.warning(f"No snapshot source for server type {server.type}")
                        return None
                    snapshots = source.fetch_sessions(server)

                parsed, errors = parse_snapshots(snapshots)
                report = self.processor.process_snapshot(db, server, parsed)
                report.malformed = errors

                logger.info(
                    f"Cycle {server.name}: {report.sessions_seen} seen, {report.started} started, "
                    f"{report.stopped} stopped, {report.violations} violations, {errors} malformed"
                )
                return report

            except Exception as e:
                db.rollback()
                logger.error(f"Poll cycle failed for server {server_id}: {e}")
                return None
            finally:
                db.close()
        finally:
            lock.release()

    def run_inactivity_scan(self) -> int:
        if not self.scanner:
            return 0

        db = self.session_factory()
        try:
            return self.scanner.scan(db)
        except Exception as e:
            db.rollback()
            logger.error(f"Inactivity scan error: {e}")
            return 0
        finally:
            db.close()
