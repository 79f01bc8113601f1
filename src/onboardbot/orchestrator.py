"""Per-turn chat pipeline plus the history, feedback, and cleanup operations."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Sequence

from .config import Settings
from .conversations import ConversationStore
from .errors import NotFoundError, PersistenceError, ValidationError
from .feedback import FeedbackStore
from .gateway import LanguageModelGateway
from .intents import classify_intent, derive_quick_replies
from .knowledge import KnowledgeStore
from .models import (
    ConversationSession,
    DeviceMetadata,
    FeedbackRecord,
    Identity,
    Intent,
    KnowledgeEntry,
    Message,
    MessageRole,
    SessionFeedback,
    utc_now_iso,
)
from .observability import MetricsRecorder, redact_text

logger = logging.getLogger(__name__)

NO_KNOWLEDGE_MARKER = "No specific knowledge base entries found for this query."

Scheduler = Callable[..., Any]


class TurnStage(str, Enum):
    RECEIVED = "received"
    SESSION_RESOLVED = "session_resolved"
    KNOWLEDGE_RETRIEVED = "knowledge_retrieved"
    RESPONSE_GENERATED = "response_generated"
    PERSISTED = "persisted"
    RESPONDED = "responded"


@dataclass(slots=True)
class ChatTurnResult:
    reply: str
    session_id: str
    conversation_id: str
    quick_replies: list[str]
    sources_count: int
    latency_ms: int
    user_role: str
    timestamp: str = field(default_factory=utc_now_iso)

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": True,
            "reply": self.reply,
            "sessionId": self.session_id,
            "quickReplies": list(self.quick_replies),
            "conversationId": self.conversation_id,
            "timestamp": self.timestamp,
            "metadata": {
                "sourcesCount": self.sources_count,
                "userRole": self.user_role,
                "responseTime": self.latency_ms,
            },
        }


def build_knowledge_context(entries: Sequence[KnowledgeEntry], char_limit: int = 1000) -> str:
    """Render retrieved entries as ``[CATEGORY] Title:\\ncontent`` blocks."""

    if not entries:
        return NO_KNOWLEDGE_MARKER
    blocks = [
        f"[{entry.category.value.upper()}] {entry.title}:\n{entry.content[:char_limit]}"
        for entry in entries
    ]
    return "\n\n".join(blocks)


def render_transcript_text(export: dict[str, Any]) -> str:
    """Plain-text rendering of an exported conversation."""

    lines = [
        f"Conversation {export['sessionId']}",
        f"User: {export['userName']} <{export['userEmail']}>",
        f"Exported: {export['exportDate']}",
        "",
    ]
    for message in export["conversation"]:
        speaker = "You" if message["role"] == MessageRole.USER.value else "Assistant"
        lines.append(f"[{message['timestamp']}] {speaker}: {message['content']}")
        if message.get("quickReplies"):
            lines.append(f"  Suggestions: {', '.join(message['quickReplies'])}")
    return "\n".join(lines) + "\n"


def _coerce_rating(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        raise ValidationError("rating is required", user_message="Conversation ID and rating are required.")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError("rating must be a whole number", user_message="Rating must be between 1 and 5.")
        value = int(value)
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped.isdecimal():
            raise ValidationError("rating must be a whole number", user_message="Rating must be between 1 and 5.")
        try:
            value = int(stripped)
        except ValueError as exc:
            raise ValidationError(
                f"rating {stripped!r} is not a number", user_message="Rating must be between 1 and 5."
            ) from exc
    elif not isinstance(value, int):
        raise ValidationError("rating has an unsupported type", user_message="Rating must be between 1 and 5.")
    if not 1 <= value <= 5:
        raise ValidationError(f"rating {value} out of range", user_message="Rating must be between 1 and 5.")
    return value


class ChatOrchestrator:
    """Coordinate one chat turn across the stores and the language model gateway."""

    def __init__(
        self,
        knowledge: KnowledgeStore,
        conversations: ConversationStore,
        feedback: FeedbackStore,
        gateway: LanguageModelGateway,
        *,
        settings: Settings | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._knowledge = knowledge
        self._conversations = conversations
        self._feedback = feedback
        self._gateway = gateway
        self._settings = settings or Settings()
        self._metrics = metrics

    # Chat turn --------------------------------------------------------

    def handle_turn(
        self,
        identity: Identity,
        message: Any,
        session_id: str | None = None,
        device: DeviceMetadata | None = None,
        schedule: Scheduler | None = None,
    ) -> ChatTurnResult:
        turn_start = time.perf_counter()
        text = self._validate_message(message)
        self._stage(TurnStage.RECEIVED, session_id, user=identity.id)

        session = self._resolve_session(identity, session_id, device)
        self._stage(TurnStage.SESSION_RESOLVED, session.session_id, new=session.persisted_count == 0)

        intent = classify_intent(text)
        self._conversations.append_message(
            session,
            Message(
                role=MessageRole.USER,
                content=text,
                timestamp=utc_now_iso(),
                metadata={"intent": intent.value, "length": len(text)},
            ),
        )

        entries = self._knowledge.search_by_role(text, identity.role, limit=self._settings.retrieval_limit)
        context = build_knowledge_context(entries, self._settings.context_char_limit)
        self._stage(TurnStage.KNOWLEDGE_RETRIEVED, session.session_id, sources=len(entries))

        gateway_start = time.perf_counter()
        reply = self._gateway.generate_reply(text, context, identity.role, identity.name)
        latency_ms = int(round((time.perf_counter() - gateway_start) * 1000))
        self._stage(TurnStage.RESPONSE_GENERATED, session.session_id, latency_ms=latency_ms)

        quick_replies = derive_quick_replies(entries, identity.role)
        source_ids = [entry.id for entry in entries]
        self._conversations.append_message(
            session,
            Message(
                role=MessageRole.BOT,
                content=reply,
                timestamp=utc_now_iso(),
                quick_replies=tuple(quick_replies),
                metadata={
                    "knowledgeSources": source_ids,
                    "length": len(reply),
                    "responseTime": latency_ms,
                },
            ),
        )
        self._conversations.save(session)
        self._stage(TurnStage.PERSISTED, session.session_id, messages=len(session.messages))

        if source_ids:
            if schedule is not None:
                schedule(self._knowledge.increment_views, source_ids)
            else:
                self._knowledge.increment_views(source_ids)

        result = ChatTurnResult(
            reply=reply,
            session_id=session.session_id,
            conversation_id=session.id,
            quick_replies=quick_replies,
            sources_count=len(entries),
            latency_ms=latency_ms,
            user_role=identity.role.value,
        )
        self._stage(TurnStage.RESPONDED, session.session_id)
        logger.info(
            "chat.turn.completed session=%s role=%s intent=%s sources=%s latency_ms=%s query=%s",
            session.session_id,
            identity.role.value,
            intent.value,
            len(entries),
            latency_ms,
            redact_text(text),
        )
        if self._metrics:
            self._metrics.increment("chat.turns", role=identity.role.value, intent=intent.value)
            self._metrics.record_timing(
                "chat.turn_duration",
                time.perf_counter() - turn_start,
                sources=len(entries),
            )
        return result

    # History and export -----------------------------------------------

    def get_history(self, identity: Identity) -> List[dict[str, Any]]:
        sessions = self._conversations.find_by_user(identity.id, self._settings.history_limit)
        summaries = []
        for session in sessions:
            last = session.messages[-1].content[:100] if session.messages else "No messages"
            summaries.append(
                {
                    "sessionId": session.session_id,
                    "conversationId": session.id,
                    "messageCount": len(session.messages),
                    "lastMessage": last,
                    "createdAt": session.created_at,
                    "updatedAt": session.updated_at,
                    "userRole": session.user_role.value,
                }
            )
        return summaries

    def get_transcript(self, identity: Identity, session_id: str) -> dict[str, Any]:
        session = self._require_session(identity, session_id)
        return {
            "sessionId": session.session_id,
            "conversationId": session.id,
            "messages": [message.to_dict() for message in session.messages],
            "createdAt": session.created_at,
            "updatedAt": session.updated_at,
            "userRole": session.user_role.value,
        }

    def export_conversation(self, identity: Identity, session_id: str) -> dict[str, Any]:
        session = self._require_session(identity, session_id)
        return {
            "sessionId": session.session_id,
            "userId": identity.id,
            "userName": identity.name,
            "userEmail": identity.email,
            "exportDate": utc_now_iso(),
            "totalMessages": len(session.messages),
            "conversation": [
                {
                    "role": message.role.value,
                    "content": message.content,
                    "timestamp": message.timestamp,
                    "quickReplies": list(message.quick_replies),
                }
                for message in session.messages
            ],
            "metadata": {
                "userRole": session.user_role.value,
                "createdAt": session.created_at,
                "updatedAt": session.updated_at,
            },
        }

    # Feedback and stats -----------------------------------------------

    def submit_feedback(
        self,
        identity: Identity,
        conversation_id: Any,
        rating: Any,
        comment: str | None = None,
        is_helpful: bool | None = None,
        question: str | None = None,
        response: str | None = None,
    ) -> FeedbackRecord:
        """Record a rating for one of the caller's conversations.

        ``question`` and ``response`` default to the latest user and bot
        messages; the session also keeps the most recent rating.
        """

        if not isinstance(conversation_id, str) or not conversation_id.strip():
            raise ValidationError(
                "conversation id is required", user_message="Conversation ID and rating are required."
            )
        score = _coerce_rating(rating)
        session = self._conversations.find_by_id(conversation_id, identity.id)
        if session is None:
            raise NotFoundError(f"conversation {conversation_id} not found for user {identity.id}")

        last_user = session.last_message(MessageRole.USER)
        last_bot = session.last_message(MessageRole.BOT)
        first_intent = session.messages[0].metadata.get("intent") if session.messages else None
        last_metadata = session.messages[-1].metadata if session.messages else {}
        record = self._feedback.add(
            conversation_id=session.id,
            user_id=identity.id,
            user_email=identity.email,
            user_role=identity.role,
            rating=score,
            question=question or (last_user.content if last_user else ""),
            bot_response=response or (last_bot.content if last_bot else ""),
            comment=(comment or "").strip(),
            is_helpful=is_helpful,
            category=first_intent or Intent.GENERAL.value,
            metadata={
                "responseTime": last_metadata.get("responseTime", 0),
                "sourceCount": len(last_metadata.get("knowledgeSources", [])),
            },
        )
        session.feedback = SessionFeedback(rating=score, comment=record.comment, submitted_at=record.created_at)
        try:
            self._conversations.save(session)
        except PersistenceError:
            self._feedback.delete(record.id)
            raise
        if self._metrics:
            self._metrics.increment("chat.feedback", rating=score, helpful=record.is_helpful)
        return record

    def get_stats(self, identity: Identity) -> dict[str, Any]:
        return {
            "user": {
                "id": identity.id,
                "name": identity.name,
                "email": identity.email,
                "role": identity.role.value,
            },
            "conversationStats": self._conversations.stats_for_user(identity.id),
            "feedbackStats": self._feedback.stats_for_user(identity.id),
        }

    # Deletion ---------------------------------------------------------

    def delete_session(self, identity: Identity, session_id: str) -> dict[str, int]:
        session = self._conversations.delete_session(session_id, identity.id)
        if session is None:
            raise NotFoundError(f"session {session_id} not found for user {identity.id}")
        removed_feedback = self._feedback.delete_for_conversation(session.id)
        logger.info(
            "chat.session.deleted session=%s user=%s feedback=%s",
            session_id,
            identity.id,
            removed_feedback,
        )
        return {"deletedCount": 1, "feedbackDeleted": removed_feedback}

    def delete_all(self, identity: Identity) -> int:
        deleted = self._conversations.delete_all_for_user(identity.id)
        removed_feedback = self._feedback.delete_for_user(identity.id)
        logger.info("chat.session.deleted_all user=%s sessions=%s feedback=%s", identity.id, deleted, removed_feedback)
        return deleted

    # Internals --------------------------------------------------------

    def _validate_message(self, message: Any) -> str:
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("message is required", user_message="Please enter a question or message.")
        limit = self._settings.max_message_length
        if len(message) > limit:
            raise ValidationError(
                f"message length {len(message)} exceeds {limit}",
                user_message=f"Your message is too long. Please keep it under {limit} characters.",
            )
        return message.strip()

    def _resolve_session(
        self,
        identity: Identity,
        session_id: str | None,
        device: DeviceMetadata | None,
    ) -> ConversationSession:
        if session_id:
            session = self._conversations.find_session(session_id, identity.id)
            if session is not None:
                return session
            logger.info("chat.session.unknown session=%s user=%s starting_new=True", session_id, identity.id)
        return self._conversations.create_session(identity, device)

    def _require_session(self, identity: Identity, session_id: str) -> ConversationSession:
        session = self._conversations.find_session(session_id, identity.id)
        if session is None:
            raise NotFoundError(f"session {session_id} not found for user {identity.id}")
        return session

    @staticmethod
    def _stage(stage: TurnStage, session_id: str | None, **fields: Any) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        extras = " ".join(f"{key}={value}" for key, value in fields.items())
        logger.debug("chat.turn.stage stage=%s session=%s %s", stage.value, session_id, extras)
