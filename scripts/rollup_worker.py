"""
Rollup Worker - Periodically refreshes the hour/day rollups

Usage:
    python scripts/rollup_worker.py            # refresh every ROLLUP_REFRESH_INTERVAL_SECONDS
    python scripts/rollup_worker.py --reset    # drop existing rollups first

Several workers may run at once; with Redis configured only one refresh
runs at a time across all of them.
"""
import sys
import time
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from eventlens.core.config import get_settings
from eventlens.core.container import build_services
from eventlens.core.errors import AnalyticsError
from eventlens.core.logging import configure_logging

logger = structlog.get_logger()


def main():
    """Main worker loop"""
    settings = get_settings()
    configure_logging(settings)
    services = build_services(settings)
    interval = settings.rollup_refresh_interval_seconds

    logger.info("rollup_worker_started", interval_seconds=interval, redis=services.redis is not None)
    print("Rollup Worker started. Press Ctrl+C to stop.")

    try:
        if "--reset" in sys.argv[1:]:
            # queries fall back to raw events until the first refresh lands
            services.rollups.discard()
            print("Existing rollups discarded.")

        while True:
            try:
                result = services.rollups.refresh()
                if result.ran:
                    print(f"Refreshed rollups: {result.event_count} events, "
                          f"{result.hour_buckets} hour / {result.day_buckets} day buckets "
                          f"in {result.duration_ms}ms")
            except AnalyticsError as e:
                # keep the loop alive; the next tick retries
                logger.error("rollup_refresh_failed", error=e.message, kind=e.kind.value)

            time.sleep(interval)

    except KeyboardInterrupt:
        logger.info("rollup_worker_stopped")
        print("\nWorker stopped.")
    finally:
        services.close()


if __name__ == "__main__":
    main()
