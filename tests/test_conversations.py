from __future__ import annotations

import re
import sqlite3
from contextlib import contextmanager

import pytest

from conftest import EMPLOYEE, HR_USER
from onboardbot.conversations import ConversationStore, new_session_token
from onboardbot.errors import PersistenceError
from onboardbot.models import DeviceMetadata, Message, MessageRole, utc_now_iso


def _message(role: MessageRole, content: str) -> Message:
    return Message(role=role, content=content, timestamp=utc_now_iso(), metadata={"length": len(content)})


def test_session_tokens_are_unique_and_prefixed() -> None:
    tokens = {new_session_token() for _ in range(50)}
    assert len(tokens) == 50
    assert all(re.fullmatch(r"session_\d+_[a-z0-9]{9}", token) for token in tokens)


def test_save_then_find_is_idempotent(conversation_store: ConversationStore) -> None:
    session = conversation_store.create_session(EMPLOYEE, DeviceMetadata.from_user_agent("Mozilla/5.0 Mobile", "10.0.0.1"))
    conversation_store.append_message(session, _message(MessageRole.USER, "Hello"))
    conversation_store.append_message(session, _message(MessageRole.BOT, "Hi there!"))
    conversation_store.save(session)

    first = conversation_store.find_session(session.session_id, EMPLOYEE.id)
    second = conversation_store.find_session(session.session_id, EMPLOYEE.id)

    assert first is not None
    assert first == second
    assert [message.content for message in first.messages] == ["Hello", "Hi there!"]
    assert first.metadata.device_type == "mobile"
    assert first.metadata.browser == "Mozilla/5.0"


def test_lookups_are_scoped_by_user(conversation_store: ConversationStore) -> None:
    session = conversation_store.create_session(EMPLOYEE)
    conversation_store.append_message(session, _message(MessageRole.USER, "Private question"))
    conversation_store.save(session)

    assert conversation_store.find_session(session.session_id, HR_USER.id) is None
    assert conversation_store.find_by_id(session.id, HR_USER.id) is None
    assert conversation_store.find_by_id(session.id, EMPLOYEE.id) is not None
    assert conversation_store.delete_session(session.session_id, HR_USER.id) is None


def test_messages_are_append_only_across_saves(conversation_store: ConversationStore) -> None:
    session = conversation_store.create_session(EMPLOYEE)
    conversation_store.append_message(session, _message(MessageRole.USER, "one"))
    conversation_store.append_message(session, _message(MessageRole.BOT, "two"))
    conversation_store.save(session)
    first_updated = session.updated_at

    reloaded = conversation_store.find_session(session.session_id, EMPLOYEE.id)
    assert reloaded is not None
    assert reloaded.pending_messages == []
    conversation_store.append_message(reloaded, _message(MessageRole.USER, "three"))
    conversation_store.append_message(reloaded, _message(MessageRole.BOT, "four"))
    conversation_store.save(reloaded)

    final = conversation_store.find_session(session.session_id, EMPLOYEE.id)
    assert final is not None
    assert [message.content for message in final.messages] == ["one", "two", "three", "four"]
    assert final.updated_at >= first_updated
    timestamps = [message.timestamp for message in final.messages]
    assert timestamps == sorted(timestamps)


def test_find_by_user_orders_by_recent_activity(conversation_store: ConversationStore) -> None:
    older = conversation_store.create_session(EMPLOYEE)
    conversation_store.append_message(older, _message(MessageRole.USER, "older"))
    conversation_store.save(older)
    newer = conversation_store.create_session(EMPLOYEE)
    conversation_store.append_message(newer, _message(MessageRole.USER, "newer"))
    conversation_store.save(newer)
    conversation_store.append_message(older, _message(MessageRole.USER, "older again"))
    conversation_store.save(older)

    sessions = conversation_store.find_by_user(EMPLOYEE.id)

    assert [item.session_id for item in sessions] == [older.session_id, newer.session_id]
    assert conversation_store.find_by_user(HR_USER.id) == []
    assert len(conversation_store.find_by_user(EMPLOYEE.id, limit=1)) == 1


def test_delete_all_returns_number_of_sessions(conversation_store: ConversationStore) -> None:
    for index in range(3):
        session = conversation_store.create_session(EMPLOYEE)
        conversation_store.append_message(session, _message(MessageRole.USER, f"question {index}"))
        conversation_store.save(session)
    other = conversation_store.create_session(HR_USER)
    conversation_store.save(other)

    assert conversation_store.delete_all_for_user(EMPLOYEE.id) == 3
    assert conversation_store.find_by_user(EMPLOYEE.id) == []
    assert len(conversation_store.find_by_user(HR_USER.id)) == 1


def test_stats_for_user(conversation_store: ConversationStore) -> None:
    empty = conversation_store.stats_for_user(EMPLOYEE.id)
    assert empty["totalConversations"] == 0
    assert empty["avgMessagesPerConversation"] == 0

    session = conversation_store.create_session(EMPLOYEE)
    for content in ("a", "b", "c", "d"):
        conversation_store.append_message(session, _message(MessageRole.USER, content))
    conversation_store.save(session)
    conversation_store.save(conversation_store.create_session(EMPLOYEE))

    stats = conversation_store.stats_for_user(EMPLOYEE.id)
    assert stats["totalConversations"] == 2
    assert stats["totalMessages"] == 4
    assert stats["avgMessagesPerConversation"] == 2
    assert stats["lastActivity"] is not None


def test_save_failure_raises_persistence_error(
    conversation_store: ConversationStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    session = conversation_store.create_session(EMPLOYEE)
    conversation_store.append_message(session, _message(MessageRole.USER, "hello"))

    @contextmanager
    def broken_connection():
        raise sqlite3.OperationalError("database is locked")
        yield  # pragma: no cover

    monkeypatch.setattr(conversation_store, "_connect", broken_connection)

    with pytest.raises(PersistenceError):
        conversation_store.save(session)
    assert session.persisted_count == 0
