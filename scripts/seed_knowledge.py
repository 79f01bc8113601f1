"""Seed the knowledge base with the sample onboarding entries."""

from __future__ import annotations

import argparse

from onboardbot import Settings
from onboardbot.knowledge import KnowledgeStore
from onboardbot.seed import seed_knowledge


def main(*, reset: bool) -> None:
    settings = Settings.from_env()
    database_path = settings.resolved_database_path()
    print(f"[seed] Using database {database_path}.")
    store = KnowledgeStore(database_path)
    created = seed_knowledge(store, reset=reset)
    for entry in created:
        print(f"[seed] Added '{entry.title}' ({entry.category.value}).")
    print(f"[seed] Done: {len(created)} entries inserted.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Delete previously seeded (manual) entries before inserting",
    )
    args = parser.parse_args()
    main(reset=args.reset)
