"""
CSV Import Script for Events

Usage:
    python scripts/import_events.py <path-to-csv>

CSV Format:
    name,timestamp,session_id,principal_id,properties_json
"""

import sys
import csv
import json
from pathlib import Path

# Add parent directory to path to import eventlens modules
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from eventlens.core.config import get_settings
from eventlens.core.container import build_services
from eventlens.core.errors import AnalyticsError
from eventlens.core.logging import configure_logging

logger = structlog.get_logger()

REQUIRED_HEADERS = {'name', 'timestamp', 'session_id', 'principal_id', 'properties_json'}


def row_to_payload(row: dict) -> dict:
    """One CSV row as an ingest payload; empty cells become missing values"""
    properties = {}
    if row['properties_json'] and row['properties_json'].strip():
        properties = json.loads(row['properties_json'])

    return {
        "name": row['name'],
        "timestamp": row['timestamp'] or None,
        "sessionId": row['session_id'] or None,
        "principalId": row['principal_id'] or None,
        "properties": properties,
    }


def import_csv(file_path: str, batch_size: int = 1000, services=None) -> dict:
    """
    Import events from CSV file through the ingestion pipeline

    Args:
        file_path: Path to CSV file
        batch_size: Number of events to process per batch
        services: Already built services; built from the environment when omitted

    Returns the totals printed in the summary.
    """
    file_path = Path(file_path)

    if not file_path.exists():
        print(f"Error: File not found: {file_path}")
        sys.exit(1)

    owns_services = services is None
    if owns_services:
        settings = get_settings()
        configure_logging(settings)
        services = build_services(settings)
    pipeline = services.ingestion

    print(f"Starting import from: {file_path}")

    total_processed = 0
    total_inserted = 0
    total_rejected = 0
    total_session_errors = 0

    def flush(batch: list) -> None:
        nonlocal total_inserted, total_rejected, total_session_errors
        rows = [row_number for row_number, _ in batch]
        result = pipeline.ingest_batch([event for _, event in batch])
        total_inserted += result.count
        for index, reason in result.failed:
            total_rejected += 1
            print(f"Error on row {rows[index]}: {reason}")
        for session_id, message in result.session_errors.items():
            total_session_errors += 1
            print(f"Session {session_id} not updated: {message}")

    try:
        with open(file_path, 'r', encoding='utf-8', newline='') as f:
            reader = csv.DictReader(f)

            if not REQUIRED_HEADERS.issubset(reader.fieldnames or []):
                print(f"Error: CSV must have headers: {sorted(REQUIRED_HEADERS)}")
                print(f"Found headers: {reader.fieldnames}")
                sys.exit(1)

            batch = []

            # row 1 is the header
            for row_number, row in enumerate(reader, 2):
                total_processed += 1
                try:
                    payload = row_to_payload(row)
                except json.JSONDecodeError as e:
                    total_rejected += 1
                    print(f"Error on row {row_number}: properties_json: {e}")
                    continue

                errors = pipeline.validator.validate(payload)
                if errors:
                    total_rejected += 1
                    print(f"Error on row {row_number}: {'; '.join(errors)}")
                    continue

                batch.append((row_number, pipeline.validator.parse(payload)))

                if len(batch) >= batch_size:
                    flush(batch)
                    print(f"Processed {total_processed} rows | "
                          f"Inserted: {total_inserted} | "
                          f"Rejected: {total_rejected}")
                    batch = []

            if batch:
                flush(batch)

    except AnalyticsError as e:
        logger.error("import_failed", error=e.message, kind=e.kind.value)
        print(f"Import aborted: {e.message}")
        sys.exit(1)
    finally:
        if owns_services:
            services.close()

    print("\n" + "=" * 50)
    print("Import completed!")
    print(f"Total rows: {total_processed}")
    print(f"Total inserted: {total_inserted}")
    print(f"Total rejected: {total_rejected}")
    print(f"Session update errors: {total_session_errors}")
    print("=" * 50)

    return {
        "processed": total_processed,
        "inserted": total_inserted,
        "rejected": total_rejected,
        "session_errors": total_session_errors,
    }


def main():
    if len(sys.argv) != 2:
        print("Usage: python scripts/import_events.py <path-to-csv>")
        sys.exit(1)

    import_csv(sys.argv[1])


if __name__ == "__main__":
    main()
