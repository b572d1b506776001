from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from kioskfeed.config import Settings
from kioskfeed.main import create_app
from kioskfeed.schemas import AnalysisResult

TOKEN = "test-webhook-token"
BASE_TIME = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


class StepClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: datetime = BASE_TIME, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def settings():
    return Settings(webhook_auth_token=TOKEN, store_capacity=3)


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def valid_payload():
    return {
        "company_name": "Acme & Co",
        "vacancy_title": "Backend Developer",
        "ideal_candidate_image_url": "https://images.example.com/candidate.png",
        "analysis_content": (
            "## Matching: 72%\n"
            "<p>Solide basis.</p>\n"
            "<ul><li><h3>Salaris vermelden</h3><p>Noem een range.</p></li></ul>"
        ),
        "score": "42",
        "meta": {"source": "typeform", "analysis_id": "up-1", "submitted_at": "2026-10-19T08:59:00Z"},
    }


@pytest.fixture
def make_result():
    counter = iter(range(1, 10_000))

    def _make(result_id=None, timestamp=None, **overrides):
        n = next(counter)
        fields = {
            "id": result_id or f"result-{n}",
            "company_name": f"Company {n}",
            "vacancy_title": "Vacature",
            "ideal_candidate_image_url": "https://images.example.com/c.png",
            "analysis_paragraph": "",
            "analysis_tips": "<ul><li>tip</li></ul>",
            "timestamp": timestamp or BASE_TIME + timedelta(seconds=n),
        }
        fields.update(overrides)
        return AnalysisResult(**fields)

    return _make
