"""FastAPI application exposing the onboarding chat and knowledge admin routes."""

from __future__ import annotations

import asyncio
import json
import logging
import math
from datetime import datetime, timezone
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from .auth import TokenVerifier, build_identity_dependency
from .config import Settings
from .conversations import ConversationStore
from .errors import NotFoundError, OnboardingError, PersistenceError, ValidationError
from .feedback import FeedbackStore
from .gateway import LanguageModelGateway
from .intents import POPULAR_QUESTIONS
from .knowledge import KnowledgeStore
from .models import Category, DeviceMetadata, Identity, KnowledgeEntry, Role, Source
from .observability import MetricsRecorder
from .orchestrator import ChatOrchestrator, render_transcript_text
from .ratelimit import AttemptLimiter, InMemoryAttemptStore

logger = logging.getLogger(__name__)


_LOGGING_CONFIGURED = False


def _ensure_logging() -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    app_logger = logging.getLogger("onboardbot")
    uvicorn_logger = logging.getLogger("uvicorn.error")

    handlers = list(uvicorn_logger.handlers)
    if handlers:
        app_logger.handlers = []
        for handler in handlers:
            app_logger.addHandler(handler)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        app_logger.addHandler(handler)

    if app_logger.level == logging.NOTSET or app_logger.level > logging.INFO:
        app_logger.setLevel(logging.INFO)
    app_logger.propagate = False
    _LOGGING_CONFIGURED = True


_ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    PersistenceError: 500,
}


def _status_for(exc: OnboardingError) -> int:
    for error_type, status in _ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 500


class ApplicationState:
    """Container for runtime dependencies used by the FastAPI app."""

    def __init__(
        self,
        *,
        settings: Settings,
        knowledge: KnowledgeStore,
        conversations: ConversationStore,
        feedback: FeedbackStore,
        gateway: LanguageModelGateway,
        orchestrator: ChatOrchestrator,
        metrics: MetricsRecorder | None,
    ) -> None:
        self.settings = settings
        self.knowledge = knowledge
        self.conversations = conversations
        self.feedback = feedback
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.metrics = metrics


def create_app(
    *,
    settings: Settings | None = None,
    knowledge: KnowledgeStore | None = None,
    conversations: ConversationStore | None = None,
    feedback: FeedbackStore | None = None,
    gateway: LanguageModelGateway | None = None,
    metrics: MetricsRecorder | None = None,
    verifier: TokenVerifier | None = None,
    limiter: AttemptLimiter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    _ensure_logging()

    settings = settings or Settings.from_env()
    metrics = metrics or settings.build_metrics_recorder()
    database_path = settings.resolved_database_path()
    knowledge = knowledge or KnowledgeStore(database_path)
    conversations = conversations or ConversationStore(database_path)
    feedback = feedback or FeedbackStore(database_path)
    gateway = gateway or LanguageModelGateway(settings, metrics=metrics)
    orchestrator = ChatOrchestrator(
        knowledge,
        conversations,
        feedback,
        gateway,
        settings=settings,
        metrics=metrics,
    )
    verifier = verifier or TokenVerifier(settings.jwt_secret, algorithm=settings.jwt_algorithm)
    limiter = limiter or AttemptLimiter(
        InMemoryAttemptStore(),
        max_attempts=settings.auth_max_attempts,
        lock_seconds=settings.auth_lock_seconds,
    )
    require_identity = build_identity_dependency(verifier, limiter)
    logger.info(
        "app.start database=%s backend=%s retrieval_limit=%s",
        database_path,
        settings.chat_backend,
        settings.retrieval_limit,
    )

    app = FastAPI(title="Onboarding Assistant")
    app.state.services = ApplicationState(
        settings=settings,
        knowledge=knowledge,
        conversations=conversations,
        feedback=feedback,
        gateway=gateway,
        orchestrator=orchestrator,
        metrics=metrics,
    )

    def get_state(request: Request) -> ApplicationState:
        return request.app.state.services

    def get_orchestrator(request: Request) -> ChatOrchestrator:
        return get_state(request).orchestrator

    def get_knowledge(request: Request) -> KnowledgeStore:
        return get_state(request).knowledge

    def get_gateway(request: Request) -> LanguageModelGateway:
        return get_state(request).gateway

    def get_metrics(request: Request) -> MetricsRecorder | None:
        return get_state(request).metrics

    any_user = require_identity()
    knowledge_editor = require_identity(Role.ADMIN, Role.HR)
    admin_only = require_identity(Role.ADMIN)

    @app.exception_handler(OnboardingError)
    async def _onboarding_error_handler(request: Request, exc: OnboardingError) -> JSONResponse:
        status = _status_for(exc)
        if status >= 500:
            logger.error("request.failed path=%s error=%s", request.url.path, exc, exc_info=exc)
        else:
            logger.info("request.rejected path=%s status=%s error=%s", request.url.path, status, exc)
        return JSONResponse({"success": False, "error": exc.user_message}, status_code=status)

    async def _read_json(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError("request body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ValidationError("request body must be a JSON object")
        return payload

    # Chat ---------------------------------------------------------------

    @app.post("/chat", response_class=JSONResponse)
    async def chat(
        request: Request,
        background_tasks: BackgroundTasks,
        identity: Identity = Depends(any_user),
        orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    ) -> JSONResponse:
        try:
            payload = await _read_json(request)
        except ValidationError:
            return JSONResponse(
                {"success": False, "error": "Invalid request body", "reply": "Please enter a question or message."},
                status_code=400,
            )
        session_id = payload.get("sessionId")
        device = DeviceMetadata.from_user_agent(
            request.headers.get("user-agent"),
            request.client.host if request.client else None,
        )
        try:
            result = await asyncio.to_thread(
                orchestrator.handle_turn,
                identity,
                payload.get("message"),
                session_id if isinstance(session_id, str) else None,
                device,
                background_tasks.add_task,
            )
        except ValidationError as exc:
            return JSONResponse({"success": False, "error": "Invalid message", "reply": exc.user_message}, status_code=400)
        except PersistenceError as exc:
            logger.error("chat.turn.persist_failed user=%s error=%s", identity.id, exc)
            return JSONResponse(
                {"success": False, "error": "Internal server error", "reply": exc.user_message},
                status_code=500,
            )
        return JSONResponse(result.to_payload())

    @app.get("/chat/history", response_class=JSONResponse)
    async def chat_history(
        identity: Identity = Depends(any_user),
        orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    ) -> JSONResponse:
        conversations_list = await asyncio.to_thread(orchestrator.get_history, identity)
        if not conversations_list:
            return JSONResponse(
                {"success": False, "error": "No conversations found", "conversations": []},
                status_code=404,
            )
        return JSONResponse(
            {"success": True, "total": len(conversations_list), "conversations": conversations_list}
        )

    @app.get("/chat/history/{session_id}", response_class=JSONResponse)
    async def chat_transcript(
        session_id: str,
        identity: Identity = Depends(any_user),
        orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    ) -> JSONResponse:
        transcript = await asyncio.to_thread(orchestrator.get_transcript, identity, session_id)
        return JSONResponse({"success": True, **transcript})

    @app.post("/chat/feedback", response_class=JSONResponse)
    async def chat_feedback(
        request: Request,
        identity: Identity = Depends(any_user),
        orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    ) -> JSONResponse:
        payload = await _read_json(request)
        is_helpful = payload.get("isHelpful")
        record = await asyncio.to_thread(
            orchestrator.submit_feedback,
            identity,
            payload.get("conversationId"),
            payload.get("rating"),
            payload.get("comment"),
            is_helpful if isinstance(is_helpful, bool) else None,
            payload.get("question"),
            payload.get("response"),
        )
        return JSONResponse(
            {"success": True, "message": "Feedback submitted successfully", "feedbackId": record.id}
        )

    @app.get("/chat/stats", response_class=JSONResponse)
    async def chat_stats(
        identity: Identity = Depends(any_user),
        orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    ) -> JSONResponse:
        stats = await asyncio.to_thread(orchestrator.get_stats, identity)
        return JSONResponse({"success": True, **stats})

    @app.get("/chat/popular-questions", response_class=JSONResponse)
    async def popular_questions(identity: Identity = Depends(any_user)) -> JSONResponse:
        return JSONResponse({"success": True, "questions": list(POPULAR_QUESTIONS)})

    @app.get("/chat/export/{session_id}")
    async def export_conversation(
        session_id: str,
        export_format: str = Query("json", alias="format"),
        identity: Identity = Depends(any_user),
        orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    ) -> Response:
        export = await asyncio.to_thread(orchestrator.export_conversation, identity, session_id)
        if export_format.lower() == "text":
            return PlainTextResponse(
                render_transcript_text(export),
                headers={"Content-Disposition": f"attachment; filename=conversation-{session_id}.txt"},
            )
        return JSONResponse(
            export,
            headers={"Content-Disposition": f"attachment; filename=conversation-{session_id}.json"},
        )

    @app.delete("/chat/{session_id}", response_class=JSONResponse)
    async def delete_conversation(
        session_id: str,
        identity: Identity = Depends(any_user),
        orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    ) -> JSONResponse:
        outcome = await asyncio.to_thread(orchestrator.delete_session, identity, session_id)
        return JSONResponse({"success": True, "message": "Conversation deleted successfully", **outcome})

    @app.delete("/chat", response_class=JSONResponse)
    async def delete_all_conversations(
        identity: Identity = Depends(any_user),
        orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    ) -> JSONResponse:
        deleted = await asyncio.to_thread(orchestrator.delete_all, identity)
        return JSONResponse(
            {
                "success": True,
                "message": f"Deleted {deleted} conversations successfully",
                "deletedCount": deleted,
            }
        )

    # Knowledge administration -------------------------------------------

    def _parse_category(raw: Any) -> Category:
        try:
            return Category(str(raw or Category.GENERAL.value).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"unknown category {raw!r}", user_message="Unknown category.") from exc

    def _split_list(raw: Any, field: str) -> list[Any]:
        if isinstance(raw, str):
            return raw.split(",")
        if isinstance(raw, list):
            return raw
        raise ValidationError(
            f"{field} must be a string or a list, got {type(raw).__name__}",
            user_message=f"{field} must be a comma-separated string or a list.",
        )

    def _parse_tags(raw: Any) -> list[str]:
        if raw is None or raw == "" or raw == []:
            return []
        candidates = _split_list(raw, "tags")
        tags: list[str] = []
        for candidate in candidates:
            cleaned = str(candidate).strip().lower()
            if cleaned and cleaned not in tags:
                tags.append(cleaned)
        return tags

    def _parse_roles(raw: Any) -> list[Role] | None:
        if raw is None:
            return None
        values = _split_list(raw, "accessRoles")
        try:
            return [Role.parse(value) for value in values if str(value).strip()]
        except ValueError as exc:
            raise ValidationError(f"unknown role in {raw!r}", user_message="Unknown role.") from exc

    def _require_entry(store: KnowledgeStore, entry_id: str) -> KnowledgeEntry:
        entry = store.get(entry_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="Document not found")
        return entry

    def _ensure_can_modify(identity: Identity, entry: KnowledgeEntry) -> None:
        if identity.role is not Role.ADMIN and entry.created_by != identity.email:
            raise HTTPException(status_code=403, detail="Not authorized to modify this document")

    @app.post("/admin/qa", response_class=JSONResponse)
    async def add_qa(
        request: Request,
        identity: Identity = Depends(knowledge_editor),
        store: KnowledgeStore = Depends(get_knowledge),
    ) -> JSONResponse:
        payload = await _read_json(request)
        question = str(payload.get("question") or "").strip()
        answer = str(payload.get("answer") or "").strip()
        if not question or not answer:
            raise ValidationError("question and answer are required", user_message="Question and answer are required.")
        category = _parse_category(payload.get("category"))
        title = f"Q: {question[:100]}{'...' if len(question) > 100 else ''}"
        entry = await asyncio.to_thread(
            store.create,
            title=title,
            content=f"Question: {question}\n\nAnswer: {answer}",
            summary=answer[:200],
            category=category,
            source=Source.MANUAL,
            tags=["faq", "qa", *_parse_tags(payload.get("tags"))],
            created_by=identity.email,
        )
        return JSONResponse({"success": True, "message": "Q&A added successfully", "document": entry.to_dict()})

    @app.post("/admin/documents", response_class=JSONResponse)
    async def add_document(
        request: Request,
        identity: Identity = Depends(knowledge_editor),
        store: KnowledgeStore = Depends(get_knowledge),
        gateway_inst: LanguageModelGateway = Depends(get_gateway),
    ) -> JSONResponse:
        payload = await _read_json(request)
        title = str(payload.get("title") or "").strip()
        content = str(payload.get("content") or "").strip()
        if not title or not content:
            raise ValidationError("title and content are required", user_message="Title and content are required.")
        category = _parse_category(payload.get("category"))
        summary = await asyncio.to_thread(gateway_inst.summarize, content)
        keywords = await asyncio.to_thread(gateway_inst.extract_keywords, content)
        entry = await asyncio.to_thread(
            store.create,
            title=title,
            content=content,
            summary=summary,
            category=category,
            source=Source.UPLOAD,
            tags=[*keywords, *_parse_tags(payload.get("tags"))],
            created_by=identity.email,
        )
        logger.info("admin.document.created id=%s by=%s keywords=%s", entry.id, identity.email, len(keywords))
        return JSONResponse(
            {
                "success": True,
                "message": "Document added successfully",
                "document": entry.to_dict(include_content=False),
            }
        )

    @app.get("/admin/documents", response_class=JSONResponse)
    async def list_documents(
        category: str | None = Query(None),
        search: str | None = Query(None),
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        sort_by: str = Query("createdAt", alias="sortBy"),
        sort_order: str = Query("desc", alias="sortOrder"),
        identity: Identity = Depends(knowledge_editor),
        store: KnowledgeStore = Depends(get_knowledge),
    ) -> JSONResponse:
        if category and category != "all":
            category = _parse_category(category).value
        entries, total = await asyncio.to_thread(
            store.list_entries,
            category=category,
            search=search,
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        categories = await asyncio.to_thread(store.categories)
        return JSONResponse(
            {
                "success": True,
                "documents": [entry.to_dict(include_content=False) for entry in entries],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": math.ceil(total / limit) if total else 0,
                },
                "filters": {"categories": categories},
            }
        )

    @app.get("/admin/documents/{entry_id}", response_class=JSONResponse)
    async def get_document(
        entry_id: str,
        identity: Identity = Depends(knowledge_editor),
        store: KnowledgeStore = Depends(get_knowledge),
    ) -> JSONResponse:
        entry = await asyncio.to_thread(_require_entry, store, entry_id)
        return JSONResponse({"success": True, "document": entry.to_dict()})

    @app.put("/admin/documents/{entry_id}", response_class=JSONResponse)
    async def update_document(
        entry_id: str,
        request: Request,
        identity: Identity = Depends(knowledge_editor),
        store: KnowledgeStore = Depends(get_knowledge),
        gateway_inst: LanguageModelGateway = Depends(get_gateway),
    ) -> JSONResponse:
        payload = await _read_json(request)
        entry = await asyncio.to_thread(_require_entry, store, entry_id)
        _ensure_can_modify(identity, entry)
        content = payload.get("content")
        summary = None
        if content and content != entry.content:
            summary = await asyncio.to_thread(gateway_inst.summarize, str(content))
        category = payload.get("category")
        is_active = payload.get("isActive")
        updated = await asyncio.to_thread(
            store.update,
            entry_id,
            title=payload.get("title"),
            content=content,
            summary=summary,
            category=_parse_category(category) if category else None,
            tags=_parse_tags(payload.get("tags")) if payload.get("tags") is not None else None,
            access_roles=_parse_roles(payload.get("accessRoles")),
            is_active=is_active if isinstance(is_active, bool) else None,
        )
        if updated is None:
            raise HTTPException(status_code=404, detail="Document not found")
        return JSONResponse(
            {"success": True, "message": "Document updated successfully", "document": updated.to_dict()}
        )

    @app.delete("/admin/documents/{entry_id}", response_class=JSONResponse)
    async def delete_document(
        entry_id: str,
        identity: Identity = Depends(knowledge_editor),
        store: KnowledgeStore = Depends(get_knowledge),
    ) -> JSONResponse:
        entry = await asyncio.to_thread(_require_entry, store, entry_id)
        _ensure_can_modify(identity, entry)
        await asyncio.to_thread(store.delete, entry_id)
        return JSONResponse({"success": True, "message": "Document deleted successfully"})

    @app.get("/admin/backup", response_class=JSONResponse)
    async def backup_knowledge(
        identity: Identity = Depends(admin_only),
        store: KnowledgeStore = Depends(get_knowledge),
    ) -> JSONResponse:
        entries = await asyncio.to_thread(store.export_all)
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        logger.info("admin.backup.exported by=%s entries=%s", identity.email, len(entries))
        return JSONResponse(
            {
                "exportedAt": datetime.now(timezone.utc).isoformat(),
                "total": len(entries),
                "knowledgeBase": [entry.to_dict() for entry in entries],
            },
            headers={"Content-Disposition": f"attachment; filename=knowledge-backup-{stamp}.json"},
        )

    # Service --------------------------------------------------------------

    @app.get("/health", response_class=JSONResponse)
    async def health() -> JSONResponse:
        return JSONResponse({"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()})

    @app.get("/metrics")
    async def metrics_endpoint(metrics_inst: MetricsRecorder | None = Depends(get_metrics)) -> Response:
        if metrics_inst is None or not metrics_inst.prometheus_enabled:
            raise HTTPException(status_code=404, detail="Metrics export disabled")
        payload = metrics_inst.render_prometheus()
        return Response(content=payload, media_type=metrics_inst.prometheus_content_type)

    return app
