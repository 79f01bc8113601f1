"""Role personas used when framing prompts for the language model."""

from __future__ import annotations

from dataclasses import dataclass

from .models import Role


@dataclass(frozen=True, slots=True)
class RolePersona:
    """How the assistant should picture the person it is talking to."""

    role: Role
    description: str
    escalation_contact: str


_PERSONAS: dict[Role, RolePersona] = {
    Role.ADMIN: RolePersona(
        role=Role.ADMIN,
        description="Company Administrator (has access to all information)",
        escalation_contact="HR or your manager",
    ),
    Role.HR: RolePersona(
        role=Role.HR,
        description="HR Staff Member (has access to HR-related information)",
        escalation_contact="your manager",
    ),
    Role.EMPLOYEE: RolePersona(
        role=Role.EMPLOYEE,
        description="New Employee (needs help with onboarding)",
        escalation_contact="HR or your manager",
    ),
}


def persona_for(role: Role | str | None) -> RolePersona:
    """Return the persona for ``role``; unknown roles are treated as employees."""

    return _PERSONAS[Role.parse(role or Role.EMPLOYEE, default=Role.EMPLOYEE)]
