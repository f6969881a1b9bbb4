# streamguard/main.py

from contextlib import asynccontextmanager
from fastapi import FastAPI
from streamguard.database import init_db
from streamguard.api import router as api_router
from streamguard.events import EventPublisher
from streamguard.inactivity import InactivityScanner
from streamguard.poller import SessionProcessor
from streamguard.rules import RuleEngine
from streamguard.scheduler import MonitorScheduler
from streamguard.violations import ViolationService
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_monitor(publisher: EventPublisher, sources: dict = None) -> MonitorScheduler:
    """Wire the rule engine, violation path and processors into one scheduler"""
    rule_engine = RuleEngine()
    violation_service = ViolationService(publisher=publisher)
    processor = SessionProcessor(
        rule_engine=rule_engine,
        violation_service=violation_service,
        publisher=publisher,
    )
    scanner = InactivityScanner(rule_engine=rule_engine, violation_service=violation_service)
    return MonitorScheduler(processor, scanner=scanner, sources=sources)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""

    # Startup
    logger.info("Starting StreamGuard...")

    # Initialize database tables
    init_db()
    logger.info("Database initialized")

    publisher = EventPublisher()
    publisher.start()

    monitor = build_monitor(publisher, getattr(app.state, "sources", None))
    app.state.publisher = publisher
    app.state.monitor = monitor
    app.state.violation_service = monitor.processor.violation_service

    monitor.start()
    logger.info("StreamGuard ready - polling servers")

    yield

    # Shutdown
    logger.info("Shutting down...")

    monitor.stop()

    # Drain queued events before exit
    publisher.stop()
    logger.info(f"Event dispatcher stopped ({publisher.dropped} events dropped)")


app = FastAPI(
    title="StreamGuard",
    description="Tracks media-server playback sessions and flags account-sharing violations",
    version="1.0.0",
    lifespan=lifespan,
)

# Register routes
app.include_router(api_router)
