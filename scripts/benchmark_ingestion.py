#!/usr/bin/env python3
"""
Ingestion benchmark for the EventLens API

Usage:
    python scripts/benchmark_ingestion.py [base_url] [total_events]

Set EVENTLENS_API_KEY when the server requires an API key.
"""

import os
import sys
import time
import requests
from datetime import datetime, timedelta, timezone
import statistics

EVENT_NAMES = ["page_view", "button_click", "form_submit", "purchase", "signup"]


def generate_events(count: int, offset: int, start_date: datetime):
    """Generate test events; 10k principals spread over 2k sessions"""
    events = []

    for i in range(offset, offset + count):
        events.append({
            "name": EVENT_NAMES[i % len(EVENT_NAMES)],
            "timestamp": (start_date + timedelta(seconds=i)).isoformat(),
            "principalId": f"user_{i % 10000}",
            "sessionId": f"session_{i % 2000}",
            "properties": {"test": True, "index": i}
        })

    return events


def benchmark_ingestion(base_url: str, headers: dict, total_events: int = 100000, batch_size: int = 1500):
    """Benchmark batch ingestion"""
    print(f"\n{'=' * 60}")
    print(f"BENCHMARK: Ingesting {total_events:,} events in batches of {batch_size:,}")
    print(f"{'=' * 60}")

    start_date = datetime(2024, 3, 1, tzinfo=timezone.utc)

    total_inserted = 0
    total_failed = 0
    batch_times = []

    start_time = time.time()

    for i in range(0, total_events, batch_size):
        events = generate_events(min(batch_size, total_events - i), i, start_date)
        batch_start = time.time()

        try:
            response = requests.post(
                f"{base_url}/api/events/batch",
                json={"events": events},
                headers=headers,
                timeout=60
            )

            if response.status_code in (201, 207):
                data = response.json()
                total_inserted += data.get("count", 0)
                total_failed += len(data.get("failed", []))
            else:
                total_failed += len(events)
                print(f"Error in batch {i // batch_size}: Status {response.status_code}")

        except requests.RequestException as e:
            total_failed += len(events)
            print(f"Error in batch {i // batch_size}: {e}")

        batch_time = time.time() - batch_start
        batch_times.append(batch_time)

        if (i // batch_size) % 10 == 0:
            print(f"Progress: {i + len(events):,} / {total_events:,} events | "
                  f"Batch time: {batch_time:.2f}s")

    total_time = time.time() - start_time

    print(f"\n{'=' * 60}")
    print("INGESTION RESULTS")
    print(f"{'=' * 60}")
    print(f"Total events:        {total_events:,}")
    print(f"Inserted:            {total_inserted:,}")
    print(f"Failed:              {total_failed:,}")
    print(f"Total time:          {total_time:.2f}s")
    print(f"Events/sec:          {total_events / total_time:,.0f}")
    print(f"Avg batch time:      {statistics.mean(batch_times):.2f}s")
    print(f"Min batch time:      {min(batch_times):.2f}s")
    print(f"Max batch time:      {max(batch_times):.2f}s")
    print(f"{'=' * 60}\n")

    return total_time


def main():
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
    total_events = int(sys.argv[2]) if len(sys.argv) > 2 else 100000
    api_key = os.environ.get("EVENTLENS_API_KEY")
    headers = {"X-API-Key": api_key} if api_key else {}

    print("\n" + "=" * 60)
    print("EVENTLENS API - INGESTION BENCHMARK")
    print("=" * 60)
    print(f"Target: {base_url}")
    print("=" * 60)

    # Test connection
    try:
        response = requests.get(f"{base_url}/health", timeout=5)
        if response.status_code != 200:
            print("Error: API is not healthy")
            sys.exit(1)
    except requests.RequestException as e:
        print(f"Error: Cannot connect to API: {e}")
        sys.exit(1)

    benchmark_ingestion(base_url, headers, total_events=total_events)

    print("\n" + "=" * 60)
    print("BENCHMARK COMPLETE")
    print("=" * 60)


if __name__ == "__main__":
    main()
