"""
Retention cleanup - Deletes events older than RETENTION_DAYS

Usage:
    python scripts/cleanup.py           # run once
    python scripts/cleanup.py --loop    # run every CLEANUP_INTERVAL_SECONDS
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


def run_once(services) -> bool:
    try:
        result = services.privacy.cleanup(services.settings.retention_days)
    except AnalyticsError as e:
        logger.error("retention_cleanup_failed", error=e.message, kind=e.kind.value)
        print(f"Cleanup failed: {e.message}")
        return False

    print(f"Deleted {result.events_deleted} events and {result.sessions_deleted} sessions "
          f"older than {result.cutoff.isoformat()}")
    return True


def main():
    loop = "--loop" in sys.argv[1:]

    settings = get_settings()
    configure_logging(settings)
    services = build_services(settings)

    try:
        if not loop:
            sys.exit(0 if run_once(services) else 1)

        print("Cleanup loop started. Press Ctrl+C to stop.")
        while True:
            run_once(services)
            time.sleep(settings.cleanup_interval_seconds)

    except KeyboardInterrupt:
        print("\nCleanup stopped.")
    finally:
        services.close()


if __name__ == "__main__":
    main()
