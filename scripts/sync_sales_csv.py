from __future__ import annotations

import argparse
import csv
import os
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from src.api.dependencies import get_reconciliation_service
from src.core.logging import configure_logging
from src.schemas.reconciliation import BulkSyncResult, TransactionSyncBatch, TransactionSyncEvent


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


def normalize_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def normalize_date(value: Optional[str]) -> Optional[str]:
    value = normalize_text(value)
    if not value:
        return None
    for fmt in ("%Y-%m-%d", "%m/%d/%y", "%m/%d/%Y"):
        try:
            return datetime.strptime(value, fmt).date().isoformat()
        except ValueError:
            continue
    return value


def normalize_amount(value: Optional[str]) -> Optional[str]:
    value = normalize_text(value)
    if not value:
        return None
    return value.replace("$", "").replace(",", "")


def normalize_int(value: Optional[str], default: int = 1) -> int:
    value = normalize_text(value)
    if not value:
        return default
    try:
        return int(float(value))
    except ValueError:
        return default


def chunk_rows(rows: Iterable[Dict[str, Any]], size: int) -> Iterable[List[Dict[str, Any]]]:
    batch: List[Dict[str, Any]] = []
    for row in rows:
        batch.append(row)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def build_event_payload(row: Dict[str, str], agency_id: str, default_type: str) -> Dict[str, Any]:
    transaction_type = (normalize_text(row.get("transaction_type")) or default_type).lower()
    return {
        "agency_id": agency_id,
        "first_name": normalize_text(row.get("first_name")),
        "last_name": normalize_text(row.get("last_name")),
        "full_name": normalize_text(row.get("full_name") or row.get("customer_name")),
        "zip": normalize_text(row.get("zip") or row.get("zip_code")),
        "authoritative_reference": normalize_text(row.get("policy_number")),
        "product_type": normalize_text(row.get("product_type") or row.get("product")),
        "producer_code": normalize_text(row.get("producer_code") or row.get("sub_producer")),
        "amount": normalize_amount(row.get("premium") or row.get("amount")),
        "items": normalize_int(row.get("items")),
        "transaction_date": normalize_date(row.get("transaction_date") or row.get("date")),
        "transaction_type": transaction_type,
        "source_reference_id": normalize_text(row.get("source_reference_id") or row.get("id")),
    }


def print_summary(totals: Dict[str, int], failures: List[str], preview_limit: int) -> None:
    print(f"Rows processed: {totals['processed']}")
    print(f"Applied: {totals['applied']}")
    print(f"Duplicates: {totals['duplicate']}")
    print(f"Pending review: {totals['pending_review']}")
    print(f"Failed: {totals['failed']}")
    for line in failures[:preview_limit]:
        print(f"- {line}")
    if len(failures) > preview_limit:
        print(f"... plus {len(failures) - preview_limit} more failures")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Reconcile a sales/quotes CSV export into households and daily metrics."
    )
    parser.add_argument("csv_path", help="Path to the CSV export")
    parser.add_argument("--agency-id", required=True, help="Agency the rows belong to")
    parser.add_argument(
        "--transaction-type",
        choices=("quote", "sale"),
        default="sale",
        help="Type for rows without a transaction_type column (default: sale)",
    )
    parser.add_argument("--batch-size", type=int, default=200, help="Rows per reconciliation batch")
    parser.add_argument(
        "--preview-limit",
        type=int,
        default=25,
        help="How many failed rows to print (default: 25)",
    )
    parser.add_argument(
        "--env-file",
        default=os.path.join(os.path.dirname(__file__), "..", ".env"),
        help="Path to .env file",
    )
    args = parser.parse_args()

    load_env_file(os.path.abspath(args.env_file))
    configure_logging()

    service = get_reconciliation_service()
    totals = {"processed": 0, "applied": 0, "duplicate": 0, "pending_review": 0, "failed": 0}
    failures: List[str] = []

    with open(args.csv_path, "r", encoding="utf-8-sig", newline="") as csv_file:
        reader = csv.DictReader(csv_file)
        for offset, rows in enumerate(chunk_rows(reader, args.batch_size)):
            base_line = offset * args.batch_size + 2
            events: List[TransactionSyncEvent] = []
            lines: List[int] = []
            for index, row in enumerate(rows):
                line_number = base_line + index
                try:
                    events.append(
                        TransactionSyncEvent.model_validate(
                            build_event_payload(row, args.agency_id, args.transaction_type)
                        )
                    )
                except ValidationError as exc:
                    totals["processed"] += 1
                    totals["failed"] += 1
                    failures.append(f"line {line_number}: {exc.errors()[0].get('msg', 'invalid row')}")
                    continue
                lines.append(line_number)

            if not events:
                continue
            result: BulkSyncResult = service.sync_transactions(TransactionSyncBatch(events=events))
            totals["processed"] += result.records_processed
            totals["applied"] += result.records_applied
            totals["duplicate"] += result.records_duplicate
            totals["pending_review"] += result.records_pending_review
            totals["failed"] += result.records_failed
            for item in result.items:
                if item.error:
                    failures.append(f"line {lines[item.index]}: {item.error}")

    print_summary(totals, failures, args.preview_limit)


if __name__ == "__main__":
    main()
