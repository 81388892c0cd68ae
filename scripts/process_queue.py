#!/usr/bin/env python3
"""
Run one postback queue batch and exit.

For deployments that drive processing from cron instead of the in-process
scheduler (SCHEDULER_ENABLED=false).
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from postback_tracker.logging_config import setup_logging
from postback_tracker.worker.processor import queue_processor


async def process_queue(limit: int | None = None, cleanup: bool = False):
    """Process one batch, optionally followed by retention cleanup."""
    try:
        summary = await queue_processor.run_batch(limit)
        print(
            f"Processed {summary.selected} entries: {summary.completed} completed, "
            f"{summary.retried} retried, {summary.failed} failed, {summary.skipped} skipped "
            f"({summary.reclaimed} stale claims reclaimed)"
        )
        if cleanup:
            deleted = await queue_processor.cleanup()
            print(f"Cleanup removed: {deleted}")
    finally:
        await queue_processor.close()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Process pending postbacks")
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum entries to process (default: QUEUE_BATCH_SIZE)",
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Also delete old completed/failed entries",
    )

    args = parser.parse_args()

    setup_logging()
    asyncio.run(process_queue(limit=args.limit, cleanup=args.cleanup))
