import pytest
from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI
from fastapi.testclient import TestClient

from factories import BASE_TIME, make_session, snapshot
from streamguard.api import router
from streamguard.database import get_db
from streamguard.models import Violation
from streamguard.poller import SessionProcessor
from streamguard.scheduler import MonitorScheduler
from streamguard.violations import ViolationService


@pytest.fixture
def client(session_factory, publisher):
    """Router mounted on a bare app so startup does not touch the real database"""
    app = FastAPI()
    app.include_router(router)

    service = ViolationService(publisher=publisher)
    app.state.violation_service = service
    app.state.monitor = MonitorScheduler(
        SessionProcessor(violation_service=service, publisher=publisher),
        session_factory=session_factory,
        scheduler=BackgroundScheduler(),
    )

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


@pytest.fixture
def open_violation(db, server_user):
    session = make_session(id="sess-1")
    violation = Violation(
        id="viol-1",
        rule_id="rule-1",
        rule_type="geo_restriction",
        server_user_id="user-1",
        session_id="sess-1",
        severity="high",
        data={"country": "DE"},
        created_at=BASE_TIME,
    )
    db.add_all([session, violation])
    db.commit()
    return violation


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestSnapshotPush:
    def test_push_processes_sessions(self, client, server):
        response = client.post(f"/api/servers/{server.id}/snapshot", json={"sessions": [snapshot("k1")]})

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "processed": 1, "errors": 0}

        stats = client.get("/stats/active").json()
        assert stats["active_sessions"] == 1
        assert stats["by_server"] == {server.id: 1}

    def test_push_accepts_bare_list(self, client, server):
        response = client.post(f"/api/servers/{server.id}/snapshot", json=[snapshot("k1"), {"nope": 1}])
        assert response.json() == {"status": "partial", "processed": 1, "errors": 1}

    def test_unknown_server(self, client):
        response = client.post("/api/servers/missing/snapshot", json=[])
        assert response.status_code == 404


class TestViolations:
    def test_list_unacknowledged(self, client, open_violation):
        response = client.get("/api/violations")
        assert response.status_code == 200
        body = response.json()
        assert [v["id"] for v in body] == ["viol-1"]
        assert body[0]["data"] == {"country": "DE"}

    def test_acknowledge(self, client, open_violation):
        response = client.post("/api/violations/viol-1/acknowledge")
        assert response.status_code == 200
        assert response.json()["acknowledged_at"] is not None

        assert client.get("/api/violations").json() == []
        assert [v["id"] for v in client.get("/api/violations", params={"acknowledged": True}).json()] == ["viol-1"]

    def test_acknowledge_missing(self, client):
        response = client.post("/api/violations/nope/acknowledge")
        assert response.status_code == 404
