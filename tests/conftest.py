from __future__ import annotations

import types
from pathlib import Path
from typing import Any

import pytest
from jose import jwt

from onboardbot.auth import TokenVerifier
from onboardbot.config import Settings
from onboardbot.conversations import ConversationStore
from onboardbot.feedback import FeedbackStore
from onboardbot.gateway import LanguageModelGateway
from onboardbot.knowledge import KnowledgeStore
from onboardbot.models import Identity, Role
from onboardbot.orchestrator import ChatOrchestrator

TEST_SECRET = "unit-test-secret"

EMPLOYEE = Identity(id="user-employee", email="new.hire@example.com", name="Jamie", role=Role.EMPLOYEE)
HR_USER = Identity(id="user-hr", email="people@example.com", name="Robin", role=Role.HR)
ADMIN = Identity(id="user-admin", email="admin@example.com", name="Alex", role=Role.ADMIN)


class FakeOpenAIClient:
    """Stands in for ``openai.OpenAI``; records every Responses API call."""

    def __init__(self, reply: str = "Our standard hours are 9 to 5.", error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.responses = types.SimpleNamespace(create=self._create)

    def _create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return types.SimpleNamespace(
            output=[types.SimpleNamespace(type="output_text", text=self.reply)],
            output_text=self.reply,
        )

    @property
    def last_prompt(self) -> str:
        return self.calls[-1]["input"][-1]["content"]


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "database_path": str(tmp_path / "onboarding.sqlite"),
        "chat_backend": "openai",
        "jwt_secret": TEST_SECRET,
        "observability_metrics_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


def mint_token(identity: Identity, *, secret: str = TEST_SECRET, **extra: Any) -> str:
    claims: dict[str, Any] = {
        "id": identity.id,
        "email": identity.email,
        "name": identity.name,
        "role": identity.role.value,
    }
    claims.update(extra)
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_headers(identity: Identity) -> dict[str, str]:
    return {"Authorization": f"Bearer {TokenVerifier(TEST_SECRET).issue(identity)}"}


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture()
def knowledge_store(settings: Settings) -> KnowledgeStore:
    return KnowledgeStore(settings.database_path)


@pytest.fixture()
def conversation_store(settings: Settings) -> ConversationStore:
    return ConversationStore(settings.database_path)


@pytest.fixture()
def feedback_store(settings: Settings) -> FeedbackStore:
    return FeedbackStore(settings.database_path)


@pytest.fixture()
def fake_client() -> FakeOpenAIClient:
    return FakeOpenAIClient()


@pytest.fixture()
def orchestrator(
    settings: Settings,
    knowledge_store: KnowledgeStore,
    conversation_store: ConversationStore,
    feedback_store: FeedbackStore,
    fake_client: FakeOpenAIClient,
) -> ChatOrchestrator:
    gateway = LanguageModelGateway(settings, client=fake_client)
    return ChatOrchestrator(
        knowledge_store,
        conversation_store,
        feedback_store,
        gateway,
        settings=settings,
    )
