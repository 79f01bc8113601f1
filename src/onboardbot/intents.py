"""Intent tagging and quick-reply suggestions for chat turns."""

from __future__ import annotations

import re
from typing import Iterable, List, Sequence

from .models import Category, Intent, KnowledgeEntry, Role

# Evaluated in order; the first pattern that matches wins.
_INTENT_PATTERNS: Sequence[tuple[Intent, re.Pattern[str]]] = (
    (Intent.GREETING, re.compile(r"\b(hello|hi|hey|greetings|good morning|good afternoon|welcome)\b", re.I)),
    (Intent.THANKS, re.compile(r"\b(thanks|thank you|appreciate|grateful)\b", re.I)),
    (Intent.POLICY, re.compile(r"\b(policy|policies|rule|rules|guideline|guidelines|procedure)\b", re.I)),
    (Intent.BENEFIT, re.compile(r"\b(benefit|benefits|insurance|health|401k|retirement|wellness)\b", re.I)),
    (Intent.HR, re.compile(r"\b(hr|human resources|leave|vacation|holiday|time off|pto|payroll)\b", re.I)),
    (
        Intent.IT,
        re.compile(r"\b(it|tech|technical|computer|laptop|software|hardware|password|login|email)\b", re.I),
    ),
    (Intent.EMERGENCY, re.compile(r"\b(emergency|urgent|immediate|help now|critical|asap)\b", re.I)),
    (Intent.EQUIPMENT, re.compile(r"\b(equipment|laptop|phone|desk|chair|monitor|hardware)\b", re.I)),
    (Intent.TRAINING, re.compile(r"\b(training|onboarding|orientation|learn|course|tutorial)\b", re.I)),
)

DEFAULT_QUICK_REPLIES: tuple[str, ...] = (
    "What are the working hours?",
    "How do I request vacation?",
    "Who do I contact for IT issues?",
    "What benefits are available?",
)

CATEGORY_LABELS: dict[Category, str] = {
    Category.POLICY: "Company policies",
    Category.BENEFITS: "Employee benefits",
    Category.IT: "IT support",
    Category.HR: "HR questions",
    Category.GENERAL: "General information",
    Category.ADMIN_ONLY: "Admin resources",
    Category.HR_ONLY: "HR resources",
}

POPULAR_QUESTIONS: tuple[str, ...] = (
    "What are the working hours?",
    "How do I request time off?",
    "Who do I contact for IT support?",
    "What benefits are available?",
    "How do I set up my email?",
    "What is the dress code?",
    "How do I access training materials?",
    "Who is my manager?",
    "How do I request equipment?",
    "What is the probation period?",
)

MAX_QUICK_REPLIES = 5


def classify_intent(text: str) -> Intent:
    """Return the first matching intent for ``text``, or :attr:`Intent.GENERAL`."""

    for intent, pattern in _INTENT_PATTERNS:
        if pattern.search(text or ""):
            return intent
    return Intent.GENERAL


def derive_quick_replies(results: Iterable[KnowledgeEntry], role: Role) -> List[str]:
    """Category labels for the retrieved entries, then the defaults, capped at five."""

    role = Role.parse(role, default=Role.EMPLOYEE)
    replies: list[str] = []
    for entry in results:
        if entry.category.default_access_roles() and role not in entry.category.default_access_roles():
            continue
        label = CATEGORY_LABELS[entry.category]
        if label not in replies:
            replies.append(label)
    for default in DEFAULT_QUICK_REPLIES:
        if default not in replies:
            replies.append(default)
    return replies[:MAX_QUICK_REPLIES]
