"""Sample onboarding entries used to bootstrap an empty knowledge base."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence

from .knowledge import KnowledgeStore
from .models import Category, KnowledgeEntry, Source

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SeedEntry:
    title: str
    content: str
    category: Category
    tags: tuple[str, ...]


SAMPLE_ENTRIES: Sequence[SeedEntry] = (
    SeedEntry(
        title="Company Working Hours Policy",
        content=(
            "Standard working hours are from 9:00 AM to 5:00 PM, Monday through Friday.\n\n"
            "Flexible hours: Employees may adjust their schedule within the range of 7:00 AM to 7:00 PM, "
            "with manager approval.\n\n"
            "Core hours: All employees must be available from 10:00 AM to 3:00 PM for meetings and collaboration.\n\n"
            "Lunch break: 1 hour unpaid break, typically taken between 12:00 PM and 2:00 PM.\n\n"
            "Remote work: Up to 2 days per week remote work is allowed with manager approval."
        ),
        category=Category.POLICY,
        tags=("working-hours", "policy", "remote-work"),
    ),
    SeedEntry(
        title="Vacation and Time Off Policy",
        content=(
            "Vacation Accrual:\n"
            "- 0-2 years: 15 days per year\n"
            "- 3-5 years: 20 days per year\n"
            "- 6+ years: 25 days per year\n\n"
            "Sick Leave: 10 days per year\n\n"
            "Holidays: 10 company holidays annually\n\n"
            "Request Process:\n"
            "1. Submit request through HR portal at least 2 weeks in advance\n"
            "2. Manager approval required\n"
            "3. Blackout periods: Last 2 weeks of December\n\n"
            "Carryover: Up to 5 days can be carried to next year."
        ),
        category=Category.HR,
        tags=("vacation", "time-off", "holidays", "hr"),
    ),
    SeedEntry(
        title="IT Support and Equipment",
        content=(
            "IT Support Contact:\n"
            "- Email: helpdesk@company.com\n"
            "- Phone: Ext. 5555\n"
            "- Hours: 8:00 AM - 6:00 PM\n\n"
            "Equipment provided:\n"
            "- Laptop (MacBook Pro or Dell XPS)\n"
            "- Monitor, keyboard, mouse\n"
            "- Headset for calls\n"
            "- Company mobile phone (for certain roles)\n\n"
            "Software:\n"
            "- Microsoft 365 (Teams, Outlook, Office)\n"
            "- Slack for communication\n"
            "- Jira for project management\n"
            "- VPN for remote access\n\n"
            "Issue Resolution:\n"
            "1. Contact helpdesk\n"
            "2. Ticket number provided\n"
            "3. Average response time: 2 hours\n"
            "4. Escalation available for urgent issues"
        ),
        category=Category.IT,
        tags=("it-support", "equipment", "software", "helpdesk"),
    ),
    SeedEntry(
        title="Employee Benefits Overview",
        content=(
            "Health Insurance:\n"
            "- Medical, dental, vision coverage\n"
            "- Starts on first day of employment\n"
            "- Company pays 80% of premium\n"
            "- Dependents can be added\n\n"
            "Retirement:\n"
            "- 401(k) plan with 4% company match\n"
            "- Eligibility starts after 90 days\n"
            "- Various investment options\n\n"
            "Other Benefits:\n"
            "- Life insurance (2x annual salary)\n"
            "- Disability insurance\n"
            "- Tuition reimbursement ($5,000/year)\n"
            "- Wellness program with gym reimbursement\n"
            "- Parental leave: 12 weeks paid\n\n"
            "Contact HR benefits team for details: benefits@company.com"
        ),
        category=Category.BENEFITS,
        tags=("benefits", "insurance", "401k", "health"),
    ),
)


def seed_knowledge(
    store: KnowledgeStore,
    *,
    reset: bool = False,
    entries: Sequence[SeedEntry] = SAMPLE_ENTRIES,
) -> List[KnowledgeEntry]:
    """Insert the sample entries, optionally clearing earlier manual entries first."""

    if reset:
        removed = store.delete_by_source(Source.MANUAL)
        logger.info("seed.reset removed=%s", removed)
    created = [
        store.create(
            title=item.title,
            content=item.content,
            summary=item.content.split("\n", 1)[0][:200],
            category=item.category,
            source=Source.MANUAL,
            tags=item.tags,
        )
        for item in entries
    ]
    logger.info("seed.completed created=%s", len(created))
    return created
