"""Onboarding assistant application package."""

from __future__ import annotations

from .config import Settings
from .models import Category, Identity, KnowledgeEntry, Role

__all__ = [
    "Settings",
    "Category",
    "Identity",
    "KnowledgeEntry",
    "Role",
    "ChatOrchestrator",
    "create_app",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name == "ChatOrchestrator":
        from .orchestrator import ChatOrchestrator

        return ChatOrchestrator
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module 'onboardbot' has no attribute {name}")
