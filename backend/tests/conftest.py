"""Shared fixtures: in-memory database, deterministic clock, fake collaborator."""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("SUMMARIZER_MODE", "mock")
os.environ.setdefault("VAPI_ASSISTANT_ID", "assistant-test")

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.api.router import api_router
from app.db.base import Base
from app.db.session import get_db
from app.schemas.extraction import CallProfileExtraction
from app.services.broadcast import LiveCallBroadcaster
from app.services.finalization import CallFinalizer
from app.services.live_calls import LiveCallRegistry

START = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeExtractor:
    """Stands in for the language model collaborator."""

    def __init__(self, result: CallProfileExtraction | None = None):
        self.result = result
        self.calls: list[tuple[list, object]] = []
        self.on_extract = None

    async def extract(self, transcript, existing=None):
        self.calls.append((list(transcript), existing))
        if self.on_extract is not None:
            self.on_extract(transcript, existing)
        return self.result

    async def summarize_live(self, transcript):
        return None


def make_extraction(**overrides) -> CallProfileExtraction:
    data = {
        "call": {
            "triage_level": "HIGH",
            "reason_short": "Chest pain with shortness of breath",
            "chief_complaint": "Crushing chest pain for 20 minutes",
            "symptoms": ["chest pain", "shortness of breath"],
            "risk_flags": ["possible cardiac event"],
            "summary": "Caller reports chest pain radiating to the left arm.",
            "recommendation": "Call emergency services now.",
            "call_status": "Escalated",
        },
        "patient": {
            "name": "Dana Reyes",
            "age": 58,
            "sex": "F",
            "allergies": ["penicillin"],
            "risk_level": "HIGH",
            "patient_status": "Critical",
            "conditions": [{"name": "Hypertension", "diagnosed_date": "2019", "status": "Chronic"}],
            "medications": [{"name": "Lisinopril", "dosage": "10mg", "frequency": "daily"}],
            "prior_episodes": [],
        },
        "encounter": {
            "chief_complaint": "Chest pain",
            "symptoms": [{"name": "chest pain", "severity": "Severe", "onset": "20 minutes ago"}],
            "outcome": "Escalated to emergency services",
        },
    }
    data.update(overrides)
    return CallProfileExtraction.model_validate(data)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'triage.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def extractor():
    return FakeExtractor(make_extraction())


@pytest.fixture
def finalizer(session_factory, extractor):
    return CallFinalizer(session_factory, extractor)


@pytest.fixture
def broadcaster():
    return LiveCallBroadcaster(queue_size=50)


@pytest.fixture
def registry(broadcaster, clock):
    return LiveCallRegistry(broadcaster, clock=clock, placeholder_phone="***-***-****")


@pytest.fixture
def persistent_registry(broadcaster, clock, finalizer):
    return LiveCallRegistry(broadcaster, finalizer=finalizer, clock=clock, placeholder_phone="***-***-****")


@pytest.fixture
def app(persistent_registry, finalizer, session_factory):
    app = FastAPI()
    app.include_router(api_router, prefix="/api")
    app.state.live_calls = persistent_registry
    app.state.call_finalizer = finalizer

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    return app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
