from __future__ import annotations

import argparse
import os
from typing import List

from src.api.dependencies import get_entity_resolver_service
from src.core.errors import DependentRecordsExist
from src.core.logging import configure_logging
from src.models.households import HouseholdRecord


def load_env_file(env_path: str) -> None:
    if not os.path.exists(env_path):
        return
    with open(env_path, "r", encoding="utf-8") as env_file:
        for line in env_file:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            os.environ.setdefault(key, value)


def build_display_row(household: HouseholdRecord) -> str:
    return (
        f"{household.household_key} | status={household.status} | "
        f"lead_date={household.lead_date or 'n/a'} | id={household.id}"
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Delete households that nothing references (no transactions, reviews or read models)."
    )
    parser.add_argument("--agency-id", required=True, help="Agency to scan")
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Actually delete orphan households. Without this flag, script runs in dry-run mode.",
    )
    parser.add_argument(
        "--preview-limit",
        type=int,
        default=50,
        help="How many candidate rows to print in dry-run mode (default: 50)",
    )
    parser.add_argument(
        "--env-file",
        default=os.path.join(os.path.dirname(__file__), "..", ".env"),
        help="Path to .env file",
    )
    args = parser.parse_args()

    load_env_file(os.path.abspath(args.env_file))
    configure_logging()

    resolver = get_entity_resolver_service()
    households = resolver.repository.list_households(args.agency_id)
    by_id = {household.id: household for household in households}

    dry_run = resolver.purge_households(args.agency_id, list(by_id), apply=False)
    orphans: List[str] = dry_run.deletable

    print(f"Households scanned: {len(households)}")
    print(f"Households with dependents: {len(dry_run.blocked)}")
    print(f"Orphan households: {len(orphans)}")

    if not orphans:
        print("No orphan households matched. Nothing to do.")
        return

    if not args.apply:
        print(f"\nDry run only. Showing up to {args.preview_limit} candidates:\n")
        for household_id in orphans[: args.preview_limit]:
            print(f"- {build_display_row(by_id[household_id])}")
        if len(orphans) > args.preview_limit:
            print(f"... plus {len(orphans) - args.preview_limit} more")
        print("\nRe-run with --apply to delete these households.")
        return

    print("\nApplying deletions...")
    try:
        result = resolver.purge_households(args.agency_id, orphans, apply=True)
    except DependentRecordsExist as exc:
        raise SystemExit(f"Aborted: {exc.message} {sorted(exc.dependents)}") from exc
    print(f"Deleted households: {result.deleted}")


if __name__ == "__main__":
    main()
