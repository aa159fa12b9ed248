"""
Shared test fixtures - SQLite database, test client, fake engine and design backend.
"""

import asyncio
import os
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["API_TOKEN"] = "test-token"

from aquadesign.database import Base, get_db
from aquadesign.main import app
from aquadesign.pipeline.controller import StagePipelineController
from aquadesign.pipeline.registry import SessionRegistry
from aquadesign.pipeline.session_state import SessionState
from aquadesign.routers import design_session


TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Fast timings so async scenarios finish in milliseconds
DEBOUNCE_MS = 20
FAST_OPTIONS = {
    "debounce_ms": DEBOUNCE_MS,
    "timeout_seconds": 0.5,
    "max_retries": 1,
    "retry_backoff_ms": 5,
}


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


class FakeEngine:
    """
    Stands in for the calculation engine.

    responses: stage_id -> sections dict, or a callable payload -> sections
    delays:    per-call sleep in seconds, consumed in call order
    failures:  exceptions raised by the next calls, consumed in order
    """

    def __init__(self):
        self.calls = []
        self.responses = {}
        self.delays = []
        self.failures = []

    async def preview(self, stage_id, payload):
        self.calls.append((stage_id, dict(payload)))
        delay = self.delays.pop(0) if self.delays else 0
        if delay:
            await asyncio.sleep(delay)
        if self.failures:
            raise self.failures.pop(0)
        sections = self.responses.get(stage_id, {})
        if callable(sections):
            sections = sections(payload)
        return {"status": "success", "sections": sections}

    def calls_for(self, stage_id):
        return [payload for stage, payload in self.calls if stage == stage_id]


class FakeDesignBackend:
    """
    Records commits; hands out handles 101/201 on create.

    delay:           seconds each commit waits before answering
    report:          section -> results returned by fetch_report
    report_failures: section -> error message returned instead of results
    """

    def __init__(self):
        self.commits = []
        self.reject = {}  # stage_id -> exception raised on every commit of that stage
        self.recommended_values = None
        self.design_handle = 101
        self.project_handle = 201
        self.delay = 0
        self.report = {
            "production": {"total_biomass_kg": 5000},
            "limiting_factor": {"factor": "oxygen"},
            "biofilter": {"biomedia_required_m3": 12.5},
            "pumps": {"shaft_power_kw": 3.2},
        }
        self.report_failures = {}
        self.report_calls = []

    async def commit(self, stage_id, mode, identity, payload):
        self.commits.append((stage_id, mode, identity.to_dict(), dict(payload)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if stage_id in self.reject:
            raise self.reject[stage_id]
        if mode == "create":
            return {
                "status": "success",
                "action": "created",
                "design_handle": self.design_handle,
                "project_handle": self.project_handle,
                "recommended_values": self.recommended_values,
            }
        return {
            "status": "success",
            "action": "updated",
            "design_handle": identity.design_handle,
            "project_handle": identity.project_handle,
            "recommended_values": self.recommended_values,
            "results": {"stage": stage_id},
        }

    async def fetch_report(self, identity, stage_ids):
        self.report_calls.append((identity.to_dict(), list(stage_ids)))
        sections = {"inputs": ("production", "limiting_factor"), "biofilter": ("biofilter",),
                    "pumps": ("pumps",)}
        results, errors = {}, {}
        for stage_id in stage_ids:
            for section in sections.get(stage_id, ()):
                if section in self.report_failures:
                    errors[section] = self.report_failures[section]
                elif section in self.report:
                    results[section] = self.report[section]
        return results, errors

    def modes(self, stage_id=None):
        return [mode for stage, mode, _, _ in self.commits if stage_id in (None, stage)]

    def committed_stages(self):
        return [stage for stage, _, _, _ in self.commits]


def oxygen_from_temperature(payload):
    """Engine stub: echoes temperature back as oxygen.effluentMgL."""
    return {"oxygen": {"effluentMgL": payload.get("temperature")}}


@pytest.fixture(autouse=True)
def setup_database():
    """Create all tables before each test, drop after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_engine():
    eng = FakeEngine()
    eng.responses["inputs"] = oxygen_from_temperature
    return eng


@pytest.fixture
def backend():
    return FakeDesignBackend()


@pytest.fixture
def make_controller(fake_engine, backend):
    """Factory for a controller wired to the fakes with fast timings."""
    def _make(session=None, species_client=None, **options):
        merged = dict(FAST_OPTIONS)
        merged.update(options)
        return StagePipelineController(
            session or SessionState(session_id="test-session"),
            fake_engine,
            backend,
            species_client,
            **merged,
        )
    return _make


@pytest.fixture
def registry(fake_engine, backend, monkeypatch):
    """Process registry wired to the fakes."""
    reg = SessionRegistry(lambda: fake_engine, lambda: backend, **FAST_OPTIONS)
    monkeypatch.setattr(design_session, "_registry", reg)
    return reg


@pytest.fixture
def client(registry):
    """FastAPI test client. Kept open so preview tasks survive between requests."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    """Direct database session for test setup/assertions."""
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
