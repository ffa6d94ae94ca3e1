"""
Pytest configuration and fixtures.

Every test gets its own SQLite file and a fresh app; the AI client and the
Supabase identity provider are replaced by scripted fakes.
"""

from typing import Callable, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import update

from config import Settings
from identity import FederatedIdentity
from main import create_app
from models import User
from schemas import AISummaryPayload

PASSWORD = "correct-horse-battery"


class FakeSummarizer:
    """Stands in for GeminiSummarizer. Set ``error`` to make the next calls fail."""

    is_configured = True

    def __init__(self):
        self.calls = 0
        self.error: Optional[Exception] = None
        self.on_call: Optional[Callable] = None
        self.result = AISummaryPayload(
            key_points=["First point", "Second point", "Third point"],
            full_summary=" ".join(["word"] * 250),
            tags=["python", "testing", "credits", "ai", "video"],
        )

    def summarize(self, transcript, metadata):
        self.calls += 1
        if self.on_call is not None:
            self.on_call(transcript, metadata)
        if self.error is not None:
            raise self.error
        return self.result


class FakeIdentityProvider:
    """Supabase stand-in: tokens and passwords are plain dictionaries."""

    def __init__(self):
        self.tokens: Dict[str, FederatedIdentity] = {}
        self.passwords: Dict[str, str] = {}
        self.created: List[str] = []
        self.resets: List[str] = []
        self.subject_for_new_users: Optional[str] = None

    def verify_token(self, token):
        return self.tokens.get(token)

    def create_user(self, email, password):
        self.created.append(email)
        return self.subject_for_new_users

    def sign_in(self, email, password):
        return self.passwords.get(email) == password

    def send_password_reset(self, email, redirect_to):
        self.resets.append(email)
        return True


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        environment="test",
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        gemini_api_key="",
        supabase_url="",
        supabase_service_role_key="",
        enable_rate_limiting=False,
        chunk_delay_seconds=0,
        log_format="text",
        log_level="WARNING",
    )


@pytest.fixture
def fake_summarizer():
    return FakeSummarizer()


@pytest.fixture
def fake_identity():
    return FakeIdentityProvider()


@pytest.fixture
def app(settings, fake_summarizer, fake_identity):
    return create_app(settings=settings, summarizer=fake_summarizer, identity_provider=fake_identity)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def session_factory(app, client):
    return app.state.database.session_factory


@pytest.fixture
def summary_service(app, client):
    return app.state.summary_service


@pytest.fixture
def auth_service(app, client):
    return app.state.auth_service


@pytest.fixture
def user_service(app, client):
    return app.state.user_service


def register(client, email="alice@example.com", password=PASSWORD, name="Alice") -> dict:
    response = client.post("/api/auth/register", json={"email": email, "password": password, "name": name})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def auth_headers(access_token: str) -> dict:
    return {"Authorization": f"Bearer {access_token}"}


def set_credits(session_factory, user_id: str, credits: int) -> None:
    with session_factory.begin() as db:
        db.execute(update(User).where(User.id == user_id).values(credits=credits))


def get_credits(session_factory, user_id: str) -> int:
    with session_factory() as db:
        return db.get(User, user_id).credits


def transcript(count: int = 3, text: str = "Some words spoken in the video") -> List[dict]:
    return [
        {"timestamp": f"00:{index:02d}", "text": f"{text} {index}", "startSeconds": float(index)}
        for index in range(count)
    ]


def generate_body(video_id: str = "abc", segments: Optional[List[dict]] = None) -> dict:
    return {
        "transcript": segments if segments is not None else transcript(),
        "videoMetadata": {
            "videoId": video_id,
            "title": f"Video {video_id}",
            "channelName": "Test Channel",
            "duration": "10:00",
            "url": f"https://www.youtube.com/watch?v={video_id}",
            "thumbnailUrl": f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg",
        },
    }


@pytest.fixture
def user(client):
    """A registered user: ``{"user": ..., "accessToken": ..., "refreshToken": ...}``."""
    return register(client)


@pytest.fixture
def headers(user):
    return auth_headers(user["accessToken"])
