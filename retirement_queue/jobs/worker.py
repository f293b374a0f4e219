"""
Standalone job worker.

    python -m retirement_queue.jobs.worker [--once] [--max-workers N]

Runs the analysis jobs and queue maintenance without the HTTP API.
"""
from __future__ import annotations

import argparse
import asyncio
import signal

from retirement_queue.core.config import settings
from retirement_queue.core.logger import logger
from retirement_queue.db.database import init_db
from retirement_queue.jobs.maintenance import shutdown_scheduler, start_scheduler
from retirement_queue.services.container import build_services


async def run_worker(once: bool = False, max_workers: int | None = None) -> int:
    init_db()
    services = build_services(worker_max_workers=max_workers)
    start = getattr(services.cache, "start", None)
    if start is not None:
        start()

    scheduler = None
    try:
        if once:
            ran = await services.worker.drain()
            logger.info(f"Worker drained {ran} jobs")
            return ran

        scheduler = start_scheduler(services.queue, services.worker)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, services.worker.stop)
            except NotImplementedError:
                pass
        await services.worker.run_forever()
        return 0
    finally:
        shutdown_scheduler(scheduler)
        await services.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the retirement queue job worker")
    parser.add_argument("--once", action="store_true", help="run due jobs and exit")
    parser.add_argument(
        "--max-workers",
        type=int,
        default=settings.WORKER_MAX_WORKERS,
        help="jobs run concurrently",
    )
    args = parser.parse_args()
    asyncio.run(run_worker(once=args.once, max_workers=args.max_workers))


if __name__ == "__main__":
    main()
