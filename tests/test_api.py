from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN, EMPLOYEE, HR_USER, FakeOpenAIClient, auth_headers, make_settings, mint_token
from onboardbot.app import create_app
from onboardbot.config import Settings
from onboardbot.conversations import ConversationStore
from onboardbot.errors import PersistenceError
from onboardbot.gateway import LanguageModelGateway
from onboardbot.knowledge import KnowledgeStore
from onboardbot.seed import seed_knowledge


def _build_client(settings: Settings, fake_client: FakeOpenAIClient | None = None) -> TestClient:
    gateway = LanguageModelGateway(settings, client=fake_client or FakeOpenAIClient())
    return TestClient(create_app(settings=settings, gateway=gateway))


@pytest.fixture()
def api_settings(tmp_path: Path) -> Settings:
    settings = make_settings(tmp_path)
    seed_knowledge(KnowledgeStore(settings.database_path))
    return settings


@pytest.fixture()
def client(api_settings: Settings) -> TestClient:
    return _build_client(api_settings)


def _start_chat(client: TestClient, message: str = "What are the working hours?") -> dict:
    response = client.post("/chat", json={"message": message}, headers=auth_headers(EMPLOYEE))
    assert response.status_code == 200
    return response.json()


def test_health_does_not_require_auth(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "OK"


def test_missing_token_is_rejected(client: TestClient) -> None:
    response = client.post("/chat", json={"message": "Hello"})

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "NO_TOKEN"


def test_invalid_token_is_rejected(client: TestClient) -> None:
    forged = mint_token(EMPLOYEE, secret="someone-else")
    response = client.get("/chat/history", headers={"Authorization": f"Bearer {forged}"})

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "INVALID_TOKEN"


def test_unknown_role_claim_is_rejected(client: TestClient) -> None:
    token = mint_token(EMPLOYEE, role="contractor")
    response = client.get("/chat/stats", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def test_repeated_invalid_tokens_lock_out_the_client(tmp_path: Path) -> None:
    client = _build_client(make_settings(tmp_path, auth_max_attempts=2))
    bad = {"Authorization": "Bearer not-a-jwt"}

    assert client.get("/chat/stats", headers=bad).status_code == 401
    assert client.get("/chat/stats", headers=bad).status_code == 401

    locked = client.get("/chat/stats", headers=auth_headers(EMPLOYEE))
    assert locked.status_code == 429
    assert locked.json()["detail"]["code"] == "TOO_MANY_ATTEMPTS"
    assert int(locked.headers["Retry-After"]) > 0


def test_chat_turn_round_trip(client: TestClient) -> None:
    payload = _start_chat(client)

    assert payload["success"] is True
    assert payload["reply"] == "Our standard hours are 9 to 5."
    assert payload["sessionId"].startswith("session_")
    assert payload["metadata"]["userRole"] == "employee"
    assert payload["metadata"]["sourcesCount"] >= 1
    assert 1 <= len(payload["quickReplies"]) <= 5

    follow_up = client.post(
        "/chat",
        json={"message": "Thanks!", "sessionId": payload["sessionId"]},
        headers=auth_headers(EMPLOYEE),
    )
    assert follow_up.json()["sessionId"] == payload["sessionId"]

    transcript = client.get(f"/chat/history/{payload['sessionId']}", headers=auth_headers(EMPLOYEE))
    assert transcript.status_code == 200
    assert [message["role"] for message in transcript.json()["messages"]] == ["user", "bot", "user", "bot"]


@pytest.mark.parametrize("body", [{"message": ""}, {"message": "   "}, {"message": "x" * 1001}, {}])
def test_chat_rejects_invalid_messages(client: TestClient, body: dict) -> None:
    response = client.post("/chat", json=body, headers=auth_headers(EMPLOYEE))

    assert response.status_code == 400
    data = response.json()
    assert data["success"] is False
    assert data["error"] == "Invalid message"
    assert data["reply"]


def test_chat_rejects_non_json_body(client: TestClient) -> None:
    response = client.post(
        "/chat",
        content=b"not json",
        headers={**auth_headers(EMPLOYEE), "Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid request body"


def test_history_is_scoped_to_the_caller(client: TestClient) -> None:
    assert client.get("/chat/history", headers=auth_headers(EMPLOYEE)).status_code == 404

    payload = _start_chat(client)

    history = client.get("/chat/history", headers=auth_headers(EMPLOYEE)).json()
    assert history["total"] == 1
    assert history["conversations"][0]["sessionId"] == payload["sessionId"]

    assert client.get("/chat/history", headers=auth_headers(HR_USER)).status_code == 404
    foreign = client.get(f"/chat/history/{payload['sessionId']}", headers=auth_headers(HR_USER))
    assert foreign.status_code == 404
    assert foreign.json()["success"] is False


def test_export_as_json_and_text(client: TestClient) -> None:
    session_id = _start_chat(client)["sessionId"]

    as_json = client.get(f"/chat/export/{session_id}", headers=auth_headers(EMPLOYEE))
    assert as_json.status_code == 200
    assert as_json.headers["content-disposition"] == f"attachment; filename=conversation-{session_id}.json"
    assert as_json.json()["totalMessages"] == 2

    as_text = client.get(f"/chat/export/{session_id}?format=text", headers=auth_headers(EMPLOYEE))
    assert as_text.status_code == 200
    assert as_text.headers["content-type"].startswith("text/plain")
    assert as_text.headers["content-disposition"] == f"attachment; filename=conversation-{session_id}.txt"
    assert "You: What are the working hours?" in as_text.text


def test_feedback_and_stats(client: TestClient) -> None:
    conversation_id = _start_chat(client)["conversationId"]
    headers = auth_headers(EMPLOYEE)

    bad = client.post("/chat/feedback", json={"conversationId": conversation_id, "rating": 9}, headers=headers)
    assert bad.status_code == 400
    assert bad.json()["error"] == "Rating must be between 1 and 5."

    missing = client.post("/chat/feedback", json={"conversationId": "nope", "rating": 4}, headers=headers)
    assert missing.status_code == 404

    ok = client.post(
        "/chat/feedback",
        json={"conversationId": conversation_id, "rating": 5, "comment": "Great"},
        headers=headers,
    )
    assert ok.status_code == 200
    assert ok.json()["feedbackId"]

    stats = client.get("/chat/stats", headers=headers).json()
    assert stats["conversationStats"]["totalConversations"] == 1
    assert stats["conversationStats"]["totalMessages"] == 2
    assert stats["feedbackStats"]["helpfulCount"] == 1


def test_popular_questions(client: TestClient) -> None:
    response = client.get("/chat/popular-questions", headers=auth_headers(EMPLOYEE))

    assert response.status_code == 200
    assert len(response.json()["questions"]) == 10


def test_delete_one_and_all_conversations(client: TestClient) -> None:
    headers = auth_headers(EMPLOYEE)
    first = _start_chat(client)
    _start_chat(client, "How do I request vacation?")
    _start_chat(client, "Who do I contact for IT issues?")

    deleted = client.delete(f"/chat/{first['sessionId']}", headers=headers)
    assert deleted.status_code == 200
    assert deleted.json()["deletedCount"] == 1
    assert client.delete(f"/chat/{first['sessionId']}", headers=headers).status_code == 404

    everything = client.delete("/chat", headers=headers)
    assert everything.json()["deletedCount"] == 2
    assert client.get("/chat/history", headers=headers).status_code == 404


def test_employees_cannot_reach_admin_routes(client: TestClient) -> None:
    response = client.get("/admin/documents", headers=auth_headers(EMPLOYEE))

    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "FORBIDDEN"


def test_add_qa_is_searchable_in_chat(client: TestClient) -> None:
    created = client.post(
        "/admin/qa",
        json={"question": "Where do I park?", "answer": "Use the garage on level 2.", "category": "general"},
        headers=auth_headers(HR_USER),
    )
    assert created.status_code == 200
    document = created.json()["document"]
    assert document["title"] == "Q: Where do I park?"
    assert document["createdBy"] == HR_USER.email
    assert {"faq", "qa"} <= set(document["tags"])

    payload = _start_chat(client, "Where can I park my car?")
    assert payload["metadata"]["sourcesCount"] >= 1

    missing = client.post("/admin/qa", json={"question": "Only a question"}, headers=auth_headers(HR_USER))
    assert missing.status_code == 400


def test_add_document_uses_summary_and_keywords(api_settings: Settings) -> None:
    client = _build_client(api_settings, FakeOpenAIClient(reply="onboarding, laptops, Onboarding."))

    response = client.post(
        "/admin/documents",
        json={"title": "Laptop setup", "content": "Every new hire receives a laptop.", "category": "it"},
        headers=auth_headers(ADMIN),
    )

    assert response.status_code == 200
    document = response.json()["document"]
    assert "content" not in document
    assert document["source"] == "upload"
    assert {"onboarding", "laptops"} <= set(document["tags"])
    assert document["summary"] == "onboarding, laptops, Onboarding."


def test_list_documents_with_filters_and_pagination(client: TestClient) -> None:
    headers = auth_headers(ADMIN)

    page = client.get("/admin/documents?limit=3&page=1&sortBy=title&sortOrder=asc", headers=headers).json()
    assert page["pagination"] == {"page": 1, "limit": 3, "total": 4, "pages": 2}
    titles = [document["title"] for document in page["documents"]]
    assert titles == sorted(titles)
    assert set(page["filters"]["categories"]) == {"policy", "hr", "it", "benefits"}

    it_only = client.get("/admin/documents?category=it", headers=headers).json()
    assert [document["category"] for document in it_only["documents"]] == ["it"]

    searched = client.get("/admin/documents?search=vacation", headers=headers).json()
    assert searched["pagination"]["total"] == 1


def test_document_ownership_rules(client: TestClient) -> None:
    documents = client.get("/admin/documents", headers=auth_headers(ADMIN)).json()["documents"]
    seeded_id = documents[0]["id"]

    forbidden = client.put(
        f"/admin/documents/{seeded_id}", json={"title": "Renamed"}, headers=auth_headers(HR_USER)
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["detail"] == "Not authorized to modify this document"

    updated = client.put(
        f"/admin/documents/{seeded_id}",
        json={"title": "Renamed", "accessRoles": ["admin", "hr"]},
        headers=auth_headers(ADMIN),
    )
    assert updated.status_code == 200
    assert updated.json()["document"]["title"] == "Renamed"
    assert updated.json()["document"]["accessRoles"] == ["admin", "hr"]

    own = client.post(
        "/admin/qa",
        json={"question": "Who approves expenses?", "answer": "Your manager."},
        headers=auth_headers(HR_USER),
    ).json()["document"]
    assert client.delete(f"/admin/documents/{own['id']}", headers=auth_headers(HR_USER)).status_code == 200
    assert client.get(f"/admin/documents/{own['id']}", headers=auth_headers(HR_USER)).status_code == 404


def test_backup_is_admin_only(client: TestClient) -> None:
    assert client.get("/admin/backup", headers=auth_headers(HR_USER)).status_code == 403

    response = client.get("/admin/backup", headers=auth_headers(ADMIN))

    assert response.status_code == 200
    assert response.headers["content-disposition"].startswith("attachment; filename=knowledge-backup-")
    body = response.json()
    assert body["total"] == 4
    assert all("content" in entry for entry in body["knowledgeBase"])


def test_metrics_endpoint_disabled_by_default(client: TestClient) -> None:
    assert client.get("/metrics").status_code == 404


def test_metrics_endpoint_exports_prometheus(tmp_path: Path) -> None:
    settings = make_settings(
        tmp_path,
        observability_metrics_enabled=True,
        observability_prometheus_enabled=True,
    )
    client = _build_client(settings)
    client.post("/chat", json={"message": "Hello"}, headers=auth_headers(EMPLOYEE))

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "onboardbot_chat_turns" in response.text


def test_tokens_signed_with_user_id_claim_are_accepted(client: TestClient) -> None:
    token = mint_token(EMPLOYEE, id=None, userId="legacy-user")
    response = client.post("/chat", json={"message": "Hello"}, headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200


def test_chat_reports_save_failure_politely(api_settings: Settings, monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_save(self: ConversationStore, session: Any) -> None:
        raise PersistenceError("database is locked at /var/lib/onboarding.sqlite")

    monkeypatch.setattr(ConversationStore, "save", failing_save)
    client = _build_client(api_settings)

    response = client.post("/chat", json={"message": "What are the working hours?"}, headers=auth_headers(EMPLOYEE))

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["reply"] == PersistenceError.user_message
    assert "database is locked" not in response.text
    assert "sqlite" not in response.text


def test_feedback_with_non_ascii_digit_rating_is_rejected(client: TestClient) -> None:
    conversation_id = _start_chat(client)["conversationId"]

    response = client.post(
        "/chat/feedback",
        json={"conversationId": conversation_id, "rating": "²"},
        headers=auth_headers(EMPLOYEE),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Rating must be between 1 and 5."


@pytest.mark.parametrize("field, value", [("tags", 5), ("tags", {"a": 1}), ("tags", True)])
def test_add_qa_rejects_malformed_tags(client: TestClient, field: str, value: Any) -> None:
    response = client.post(
        "/admin/qa",
        json={"question": "Where is parking?", "answer": "Level 2", field: value},
        headers=auth_headers(ADMIN),
    )

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_add_document_rejects_malformed_tags(client: TestClient) -> None:
    response = client.post(
        "/admin/documents",
        json={"title": "Parking", "content": "Use level 2.", "tags": 5},
        headers=auth_headers(ADMIN),
    )

    assert response.status_code == 400


@pytest.mark.parametrize("payload", [{"tags": 5}, {"accessRoles": 5}, {"accessRoles": {"role": "hr"}}])
def test_update_document_rejects_malformed_lists(client: TestClient, payload: dict) -> None:
    document_id = client.get("/admin/documents", headers=auth_headers(ADMIN)).json()["documents"][0]["id"]

    response = client.put(f"/admin/documents/{document_id}", json=payload, headers=auth_headers(ADMIN))

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_comma_separated_tags_are_accepted(client: TestClient) -> None:
    response = client.post(
        "/admin/qa",
        json={"question": "Where is parking?", "answer": "Level 2", "tags": "Parking, Garage"},
        headers=auth_headers(ADMIN),
    )

    assert response.status_code == 200
    assert {"parking", "garage"} <= set(response.json()["document"]["tags"])
