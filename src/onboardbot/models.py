"""Domain records shared by the stores, the gateway, and the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Role(str, Enum):
    EMPLOYEE = "employee"
    ADMIN = "admin"
    HR = "hr"

    @classmethod
    def parse(cls, value: Any, *, default: "Role | None" = None) -> "Role":
        """Coerce a loosely typed role value, falling back to ``default``."""

        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            if default is not None:
                return default
            raise


class Category(str, Enum):
    POLICY = "policy"
    BENEFITS = "benefits"
    IT = "it"
    HR = "hr"
    GENERAL = "general"
    ADMIN_ONLY = "admin-only"
    HR_ONLY = "hr-only"

    def default_access_roles(self) -> frozenset[Role]:
        """Roles granted to entries created in this category without explicit roles."""

        if self is Category.ADMIN_ONLY:
            return frozenset({Role.ADMIN})
        if self is Category.HR_ONLY:
            return frozenset({Role.ADMIN, Role.HR})
        return frozenset()


class Source(str, Enum):
    UPLOAD = "upload"
    MANUAL = "manual"
    SYSTEM = "system"


class MessageRole(str, Enum):
    USER = "user"
    BOT = "bot"
    SYSTEM = "system"


class Intent(str, Enum):
    GREETING = "greeting"
    THANKS = "thanks"
    POLICY = "policy"
    BENEFIT = "benefit"
    HR = "hr"
    IT = "it"
    EMERGENCY = "emergency"
    EQUIPMENT = "equipment"
    TRAINING = "training"
    GENERAL = "general"


@dataclass(frozen=True, slots=True)
class Identity:
    """Authenticated caller injected by the auth layer."""

    id: str
    email: str
    name: str
    role: Role = Role.EMPLOYEE


@dataclass(slots=True)
class KnowledgeEntry:
    id: str
    title: str
    content: str
    summary: str = ""
    category: Category = Category.GENERAL
    source: Source = Source.MANUAL
    tags: frozenset[str] = frozenset()
    access_roles: frozenset[Role] = frozenset()
    is_active: bool = True
    view_count: int = 0
    last_accessed: str | None = None
    created_by: str = "system"
    created_at: str = ""
    updated_at: str = ""
    score: float | None = None

    def visible_to(self, role: Role) -> bool:
        return self.is_active and (not self.access_roles or role in self.access_roles)

    def to_dict(self, *, include_content: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "summary": self.summary,
            "category": self.category.value,
            "source": self.source.value,
            "tags": sorted(self.tags),
            "accessRoles": sorted(role.value for role in self.access_roles),
            "isActive": self.is_active,
            "viewCount": self.view_count,
            "lastAccessed": self.last_accessed,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if include_content:
            payload["content"] = self.content
        return payload


@dataclass(frozen=True, slots=True)
class Message:
    """A single chat message; never modified after it is appended."""

    role: MessageRole
    content: str
    timestamp: str
    quick_replies: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "quickReplies": list(self.quick_replies),
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True)
class DeviceMetadata:
    device_type: str = "desktop"
    browser: str = "unknown"
    ip_address: str | None = None

    @classmethod
    def from_user_agent(cls, user_agent: str | None, ip_address: str | None) -> "DeviceMetadata":
        agent = (user_agent or "").strip()
        return cls(
            device_type="mobile" if "Mobile" in agent else "desktop",
            browser=agent.split(" ")[0] if agent else "unknown",
            ip_address=ip_address,
        )


@dataclass(slots=True)
class SessionFeedback:
    rating: int
    comment: str
    submitted_at: str


@dataclass(slots=True)
class ConversationSession:
    id: str
    session_id: str
    user_id: str
    user_email: str
    user_name: str
    user_role: Role
    messages: list[Message] = field(default_factory=list)
    feedback: SessionFeedback | None = None
    metadata: DeviceMetadata = field(default_factory=DeviceMetadata)
    created_at: str = ""
    updated_at: str = ""
    persisted_count: int = 0

    @property
    def pending_messages(self) -> list[Message]:
        return self.messages[self.persisted_count :]

    def last_message(self, role: MessageRole) -> Message | None:
        for message in reversed(self.messages):
            if message.role is role:
                return message
        return None


@dataclass(slots=True)
class FeedbackRecord:
    id: str
    conversation_id: str
    user_id: str
    user_email: str
    user_role: Role
    question: str
    bot_response: str
    rating: int
    comment: str = ""
    is_helpful: bool = True
    category: str = Intent.GENERAL.value
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()
