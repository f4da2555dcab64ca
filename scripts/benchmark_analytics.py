#!/usr/bin/env python3
"""
Query benchmark for the EventLens API

Usage:
    python scripts/benchmark_analytics.py [base_url]

Run after benchmark_ingestion.py. Refreshes the rollups first so dashboard
queries can be served from them.
"""

import os
import sys
import time
import requests
import statistics

WINDOW = "startDate=2024-03-01&endDate=2024-03-07"

FUNNEL = {
    "steps": [{"eventName": "page_view"}, {"eventName": "button_click"}, {"eventName": "purchase"}],
    "startDate": "2024-03-01",
    "endDate": "2024-03-07",
}

COHORT = {
    "cohortEvent": "signup",
    "returnEvent": "page_view",
    "startDate": "2024-03-01",
    "endDate": "2024-03-07",
    "granularity": "day",
    "periods": 7,
}


def benchmark_queries(base_url: str, headers: dict):
    """Benchmark analytics queries"""
    print(f"\n{'=' * 60}")
    print("BENCHMARK: Query Performance")
    print(f"{'=' * 60}")

    queries = [
        ("Summary (7 days)", "GET", f"{base_url}/api/dashboard/summary?{WINDOW}", None),
        ("Events over time (hour)", "GET", f"{base_url}/api/dashboard/events-over-time?{WINDOW}&interval=hour", None),
        ("Timeline (1h buckets)", "GET", f"{base_url}/api/replay/timeline?{WINDOW}&bucketSizeMs=3600000", None),
        ("Funnel (3 steps)", "POST", f"{base_url}/api/analytics/funnel", FUNNEL),
        ("Cohort (7 days)", "POST", f"{base_url}/api/analytics/cohort", COHORT),
        ("Session replay", "GET", f"{base_url}/api/replay/sessions/session_1", None),
    ]

    results = []

    for name, method, url, body in queries:
        times = []

        # Run each query 5 times
        for _ in range(5):
            start = time.time()
            try:
                response = requests.request(method, url, json=body, headers=headers, timeout=60)
                elapsed = (time.time() - start) * 1000  # Convert to ms

                if response.status_code == 200:
                    times.append(elapsed)
                else:
                    print(f"Error in {name}: Status {response.status_code}")
            except requests.RequestException as e:
                print(f"Error in {name}: {e}")

        if times:
            ordered = sorted(times)
            results.append({
                "name": name,
                "p50": statistics.median(times),
                "p95": ordered[int(len(times) * 0.95)] if len(times) > 1 else times[0],
                "p99": ordered[int(len(times) * 0.99)] if len(times) > 1 else times[0],
                "avg": statistics.mean(times),
            })

    print(f"\n{'Query':<25} {'P50':>10} {'P95':>10} {'P99':>10} {'Avg':>10}")
    print(f"{'-' * 70}")
    for r in results:
        print(f"{r['name']:<25} {r['p50']:>9.0f}ms {r['p95']:>9.0f}ms "
              f"{r['p99']:>9.0f}ms {r['avg']:>9.0f}ms")

    print(f"{'=' * 60}\n")

    return results


def main():
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
    api_key = os.environ.get("EVENTLENS_API_KEY")
    headers = {"X-API-Key": api_key} if api_key else {}

    print("\n" + "=" * 60)
    print("EVENTLENS API - QUERY BENCHMARK")
    print("=" * 60)
    print(f"Target: {base_url}")
    print("=" * 60)

    try:
        response = requests.get(f"{base_url}/health", timeout=5)
        if response.status_code != 200:
            print("Error: API is not healthy")
            sys.exit(1)
        requests.post(f"{base_url}/api/rollups/refresh?wait=true", headers=headers, timeout=600)
    except requests.RequestException as e:
        print(f"Error: Cannot connect to API: {e}")
        sys.exit(1)

    benchmark_queries(base_url, headers)

    print("\n" + "=" * 60)
    print("BENCHMARK COMPLETE")
    print("=" * 60)


if __name__ == "__main__":
    main()
