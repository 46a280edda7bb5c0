"""
Shared pytest fixtures for the CivicGrid engine test suite.

Runs fully in-process: an in-memory record store stands in for MongoDB and a
scripted oracle stands in for OpenAI. The FastAPI app is wired to both via
dependency overrides, so no network services are needed.
"""

import os

os.environ.setdefault("JWT_SECRET", "test-secret-for-civicgrid-suite-0123456789abcdef")

import httpx
import pytest
import pytest_asyncio

from civicgrid.errors import OracleUnavailable
from civicgrid.intake import IntakeGateway
from civicgrid.lifecycle import LifecycleEngine
from civicgrid.models import (ActorProfile, ActorRole, CompletionAnalysis, CreateIssueCommand,
                              Department, Geolocation, Priority, SeverityAssessment,
                              VoiceAnalysis)
from civicgrid.policy import estimate_resolution_days
from civicgrid.store import ACTORS, InMemoryRecordStore


class ScriptedOracle:
    """Returns whatever the test configured; records every call by name."""

    def __init__(self):
        self.severity = SeverityAssessment(is_relevant=True, severity_score=9,
                                           reasoning="Deep pothole spanning the lane")
        self.priority = Priority.HIGH
        self.title = "Deep pothole on Main Street"
        self.fraudulent = False
        self.completion = CompletionAnalysis(narrative="Pothole filled and levelled.",
                                             is_satisfactory=True, summary="Pothole repaired.")
        self.transcript = "There is a huge pothole near the market"
        self.voice = VoiceAnalysis(title="Broken streetlight near school",
                                   category="Broken Streetlight",
                                   transcript="The streetlight outside the school is broken",
                                   address="Outside Central School", postal_code="560001",
                                   priority="Medium", severity_score=6,
                                   reasoning="Dark road near a school")
        self.failing = set()
        self.calls = []

    def _record(self, name):
        self.calls.append(name)
        if name in self.failing:
            raise OracleUnavailable(f"{name} unavailable")

    async def classify_severity(self, images):
        self._record("classify_severity")
        return self.severity

    async def classify_priority(self, severity_score, category, notes=None, transcript=None):
        self._record("classify_priority")
        return self.priority

    async def generate_title(self, category, notes=None, transcript=None, reasoning=""):
        self._record("generate_title")
        return self.title

    async def detect_fraudulent_image(self, images):
        self._record("detect_fraudulent_image")
        return self.fraudulent

    async def compare_completion(self, before_images, before_notes, before_transcript,
                                 after_images, after_notes):
        self._record("compare_completion")
        return self.completion

    async def transcribe_audio(self, audio, filename="report.wav"):
        self._record("transcribe_audio")
        return self.transcript

    async def process_voice_report(self, audio):
        self._record("process_voice_report")
        return self.voice

    @staticmethod
    def estimate_resolution_days(priority, pending_count):
        return estimate_resolution_days(priority, pending_count)


def add_actor(store, actor_id, role, department=None, **fields) -> ActorProfile:
    profile = ActorProfile(id=actor_id, role=role, department=department,
                           display_name=fields.pop("display_name", actor_id), **fields)
    assert store.create_if_absent(ACTORS, profile)
    return profile


def issue_command(actor_id="citizen-1", **overrides) -> CreateIssueCommand:
    data = {
        "actor_id": actor_id,
        "images": ["https://img.example/pothole-1.jpg"],
        "notes": "Large pothole in front of the bakery",
        "location": Geolocation(latitude=12.97, longitude=77.59),
        "address": "12 Main Street",
        "postal_code": "560001",
        "category": "Pothole",
    }
    data.update(overrides)
    return CreateIssueCommand(**data)


@pytest.fixture
def oracle():
    return ScriptedOracle()


@pytest.fixture
def store():
    return InMemoryRecordStore(max_attempts=25, backoff_base=0.001)


@pytest.fixture
def actors(store):
    """One official, staff in two departments and three citizens."""
    return {
        "official": add_actor(store, "official-1", ActorRole.OFFICIAL),
        "staff": add_actor(store, "staff-1", ActorRole.STAFF, Department.PUBLIC_WORKS,
                           display_name="Road Crew"),
        "sanitation": add_actor(store, "staff-2", ActorRole.STAFF, Department.SANITATION),
        "citizen": add_actor(store, "citizen-1", ActorRole.CITIZEN),
        "neighbour": add_actor(store, "citizen-2", ActorRole.CITIZEN),
        "other": add_actor(store, "citizen-3", ActorRole.CITIZEN),
    }


@pytest.fixture
def engine(store, oracle):
    return LifecycleEngine(store, oracle)


@pytest.fixture
def gateway(engine, oracle):
    return IntakeGateway(engine, oracle, settle_seconds=0)


@pytest_asyncio.fixture
async def client(store, engine, gateway):
    """In-process httpx AsyncClient with the engine swapped for the in-memory one."""
    from civicgrid.app import app, get_engine, get_gateway, get_store, limiter

    # Disable rate limiting so repeated logins in one test aren't throttled
    limiter.enabled = False
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_gateway] = lambda: gateway
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()


def auth_headers(actor_id: str, role: str) -> dict:
    from civicgrid.app import create_access_token
    return {"Authorization": f"Bearer {create_access_token({'sub': actor_id, 'role': role})}"}
