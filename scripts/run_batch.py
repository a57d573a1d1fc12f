#!/usr/bin/env python3
"""
Operate bulk invoice batches and single invoice submissions from the shell.

Settings come from einvoice_config (defaults.yaml plus EINVOICE_* overrides,
or --settings <file>).  Set EINVOICE_FBR__BASE_URL to point at a stub.

Usage:
    python3 scripts/run_batch.py <command> [options]

Examples:
    # Count rows and list columns without storing anything
    python3 scripts/run_batch.py probe --file invoices.csv

    # Upload, validate and submit a file for a business
    python3 scripts/run_batch.py upload --business <uuid> --file invoices.csv

    # Upload only; process later
    python3 scripts/run_batch.py upload --business <uuid> --file rows.jsonl --no-process
    python3 scripts/run_batch.py process --batch <uuid>

    # Counters and per-row detail
    python3 scripts/run_batch.py status --batch <uuid> --rows

    # Retry transient/unexpected failures, cancel a running batch
    python3 scripts/run_batch.py retry --batch <uuid>
    python3 scripts/run_batch.py cancel --batch <uuid>

    # Single invoice, and the scheduled-retry sweep
    python3 scripts/run_batch.py submit-invoice --invoice <uuid>
    python3 scripts/run_batch.py retry-due --limit 50

    # Attempt history of an invoice, and retry metrics for a business
    python3 scripts/run_batch.py attempts --invoice <uuid>
    python3 scripts/run_batch.py retry-metrics --business <uuid> --since 2025-01-01
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from uuid import UUID, uuid4

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

FORMATS_BY_SUFFIX = {".csv": "csv", ".json": "json", ".jsonl": "jsonl", ".xlsx": "xlsx"}


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Bulk invoice batches: upload -> validate -> submit to FBR.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--settings", type=Path, default=None, help="Settings YAML (default: packaged defaults).")
    parser.add_argument("--db-url", default=None, help="Database URL (default: settings database.url).")
    parser.add_argument(
        "--actor-id",
        default=None,
        help="Actor UUID for attribution (default: EINVOICE_ACTOR_ID env or new UUID).",
    )
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first.")
    sub = parser.add_subparsers(dest="command", required=True)

    probe = sub.add_parser("probe", help="Row count, columns and sample rows of a file.")
    probe.add_argument("--file", required=True, type=Path)
    probe.add_argument("--format", default=None, help="csv, json, jsonl or xlsx (default: from suffix).")

    upload = sub.add_parser("upload", help="Create a batch from a file.")
    upload.add_argument("--business", required=True, type=UUID)
    upload.add_argument("--file", required=True, type=Path)
    upload.add_argument("--format", default=None, help="csv, json, jsonl or xlsx (default: from suffix).")
    upload.add_argument("--no-process", action="store_true", help="Ingest only; do not validate or submit.")

    for name, help_text in (
        ("process", "Validate and submit what a batch still has outstanding."),
        ("status", "Show batch counters and statuses."),
        ("retry", "Reset retryable failed rows and reprocess."),
        ("revalidate", "Re-run validation on rows not yet valid."),
        ("cancel", "Request cancellation of a batch."),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--batch", required=True, type=UUID)
        if name == "status":
            cmd.add_argument("--rows", action="store_true", help="Include per-row detail.")

    submit = sub.add_parser("submit-invoice", help="Submit one invoice through the state machine.")
    submit.add_argument("--invoice", required=True, type=UUID)

    due = sub.add_parser("retry-due", help="Resubmit invoices whose scheduled retry time has passed.")
    due.add_argument("--limit", type=int, default=100)

    attempts = sub.add_parser("attempts", help="Every recorded authority call for an invoice.")
    attempts.add_argument("--invoice", required=True, type=UUID)

    metrics = sub.add_parser("retry-metrics", help="Attempt counts by outcome and kind, retry success.")
    metrics.add_argument("--business", type=UUID, default=None, help="Limit to one business (default: all).")
    metrics.add_argument("--since", type=_timestamp, default=None, help="ISO date or time; naive means UTC.")

    return parser.parse_args(argv)


def _timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _source_format(path: Path, explicit: str | None) -> str | None:
    return explicit or FORMATS_BY_SUFFIX.get(path.suffix.lower())


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _summary_dict(summary, with_rows: bool) -> dict:
    data = {
        "batch_id": summary.batch_id,
        "processing_status": summary.processing_status.value,
        "validation_status": summary.validation_status.value,
        "total_records": summary.total_records,
        "valid_records": summary.valid_records,
        "invalid_records": summary.invalid_records,
        "sandbox_validated_records": summary.sandbox_validated_records,
        "production_submitted_records": summary.production_submitted_records,
        "failed_records": summary.failed_records,
        "cancel_requested": summary.cancel_requested,
        "errors": summary.errors,
        "started_at": summary.started_at,
        "completed_at": summary.completed_at,
    }
    if with_rows:
        data["rows"] = [
            {
                "row_number": row.row_number,
                "local_id": row.local_id,
                "stage": row.stage.value,
                "data_valid": row.data_valid,
                "sandbox_submitted": row.sandbox_submitted,
                "production_submitted": row.production_submitted,
                "last_error_kind": row.last_error_kind,
                "last_error_message": row.last_error_message,
                "validation_errors": list(row.validation_errors),
            }
            for row in summary.rows
        ]
    return data


def _outcome_dict(outcome) -> dict:
    return {
        "invoice_id": outcome.invoice_id,
        "status": outcome.status.value,
        "invoice_number": outcome.invoice_number,
        "mode": outcome.mode.value if outcome.mode else None,
        "attempts": outcome.attempts,
        "error_kind": outcome.error_kind.value if outcome.error_kind else None,
        "error_message": outcome.error_message,
        "fbr_invoice_number": outcome.fbr_invoice_number,
    }


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    actor_id = UUID(args.actor_id) if args.actor_id else UUID(os.environ.get("EINVOICE_ACTOR_ID", str(uuid4())))

    # Lazy imports so we fail fast on args first
    from einvoice_batch.orchestrator import BatchOrchestrator
    from einvoice_config import get_active_settings
    from einvoice_ingestion.services import BatchIngestor
    from einvoice_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
    from einvoice_kernel.exceptions import EInvoiceError
    from einvoice_kernel.logging_config import configure_logging

    configure_logging()
    try:
        settings = get_active_settings(args.settings)
    except (OSError, EInvoiceError) as e:
        print(f"ERROR: Failed to load settings: {e}", file=sys.stderr)
        return 1

    if args.command in ("probe", "upload"):
        source_path = args.file.resolve()
        if not source_path.is_file():
            print(f"ERROR: File not found: {source_path}", file=sys.stderr)
            return 1
        fmt = _source_format(source_path, args.format)
        if fmt is None:
            print(f"ERROR: Cannot tell the format of {source_path.name}; pass --format.", file=sys.stderr)
            return 1

    db = settings.database
    init_engine_from_url(
        args.db_url or db.url, echo=db.echo, pool_size=db.pool_size, max_overflow=db.max_overflow
    )
    if args.create_tables:
        create_tables()
    session_factory = get_session_factory()

    try:
        if args.command == "probe":
            with source_path.open("rb") as stream:
                probe = BatchIngestor(session_factory).probe(stream, fmt)
            print(f"Rows: {probe.row_count}")
            print(f"Columns: {list(probe.columns)}")
            for row in probe.sample_rows:
                _print(row)
            return 0

        orchestrator = BatchOrchestrator.from_settings(settings, session_factory)

        if args.command == "upload":
            with source_path.open("rb") as stream:
                batch_id = orchestrator.upload_batch(
                    args.business,
                    stream,
                    fmt,
                    actor_id,
                    filename=source_path.name,
                    process=not args.no_process,
                )
            _print(_summary_dict(orchestrator.get_batch_status(batch_id, include_rows=False), False))
        elif args.command == "process":
            _print(_summary_dict(orchestrator.process_batch(args.batch, actor_id), False))
        elif args.command == "status":
            summary = orchestrator.get_batch_status(args.batch, include_rows=args.rows)
            _print(_summary_dict(summary, args.rows))
        elif args.command == "retry":
            reset = orchestrator.retry_failed_rows(args.batch, actor_id)
            print(f"Rows reset: {reset}")
            _print(_summary_dict(orchestrator.get_batch_status(args.batch, include_rows=False), False))
        elif args.command == "revalidate":
            result = orchestrator.revalidate_batch(args.batch, actor_id)
            _print({
                "pass_number": result.pass_number,
                "checked": result.checked,
                "valid_records": result.valid_records,
                "invalid_records": result.invalid_records,
                "validation_status": result.validation_status.value,
            })
        elif args.command == "cancel":
            _print(_summary_dict(orchestrator.cancel_batch(args.batch, actor_id), False))
        elif args.command == "submit-invoice":
            _print(_outcome_dict(orchestrator.submit_invoice(args.invoice, actor_id)))
        elif args.command == "retry-due":
            outcomes = orchestrator.retry_due_invoices(actor_id, limit=args.limit)
            _print([_outcome_dict(o) for o in outcomes])
        elif args.command == "attempts":
            _print([a.to_dict() for a in orchestrator.invoice_attempts(args.invoice)])
        elif args.command == "retry-metrics":
            _print(orchestrator.retry_metrics(business_id=args.business, since=args.since).to_dict())
    except EInvoiceError as e:
        print(f"ERROR [{e.code}]: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
