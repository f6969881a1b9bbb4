import os
import pathlib
import sys

import pytest

# Keep the module-level engine off MySQL; tests build their own engine below
os.environ.setdefault("STREAMGUARD_DATABASE_URL_OVERRIDE", "sqlite://")

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from streamguard.database import init_db
from streamguard.models import Server, ServerUser


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def server(db):
    srv = Server(id="srv-1", name="Living Room Plex", type="plex", enabled=True, poll_interval_seconds=15)
    db.add(srv)
    db.commit()
    return srv


@pytest.fixture
def server_user(db, server):
    user = ServerUser(id="user-1", server_id=server.id, external_id="ext-1", username="alice", trust_score=100)
    db.add(user)
    db.commit()
    return user


class RecordingPublisher:
    """Collects published events synchronously"""

    def __init__(self):
        self.events = []

    def publish(self, event_type, payload):
        self.events.append((event_type, payload))
        return True

    def types(self):
        return [e[0] for e in self.events]


@pytest.fixture
def publisher():
    return RecordingPublisher()
