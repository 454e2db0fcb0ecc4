"""
Worker Scheduler — runs the draft and send worker pools in one AsyncIO loop.

    ┌────────────────────────────────────────┐
    │            AsyncIO Event Loop          │
    │                                        │
    │  ┌──────────────┐  ┌────────────────┐  │
    │  │ DraftWorker  │  │  SendWorker    │  │
    │  │ email-drafts │  │  send-email    │  │
    │  │ ×3 consumers │  │  ×5 consumers  │  │
    │  └──────────────┘  └────────────────┘  │
    │                                        │
    │  heartbeat (queue stats, every 5 min)  │
    └────────────────────────────────────────┘

Graceful shutdown on SIGTERM / SIGINT: consumers finish their current job,
anything still running after the grace period is cancelled and picked up
again later as a stale active job.
"""

import asyncio
import logging
import os
import signal
from datetime import datetime

from pymongo.errors import PyMongoError

from database import get_collection
from workers.draft_worker import DraftWorker
from workers.send_worker import SendWorker

logger = logging.getLogger("outreach.scheduler")

HEARTBEAT = "heartbeat"
HEARTBEAT_INTERVAL_SECONDS = 300
SHUTDOWN_GRACE_SECONDS = 15


class WorkerScheduler:
    """
    Lifecycle:
        scheduler = WorkerScheduler()
        await scheduler.start()   # blocks until SIGTERM/SIGINT
    """

    def __init__(self, draft_worker: DraftWorker = None, send_worker: SendWorker = None):
        self.draft_worker = draft_worker or DraftWorker()
        self.send_worker = send_worker or SendWorker()
        self._shutdown = asyncio.Event()
        self._tasks: list = []

    @property
    def workers(self):
        return [self.draft_worker, self.send_worker]

    async def start(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

        logger.info("── Worker scheduler starting ──")
        self._tasks = [
            asyncio.create_task(worker.run(self._shutdown), name=worker.queue.name)
            for worker in self.workers
        ]
        self._tasks.append(asyncio.create_task(self._heartbeat_loop(), name="heartbeat"))

        await self._shutdown.wait()
        await self._graceful_shutdown()

    def _handle_signal(self, sig):
        logger.info(f"Received signal {sig.name} — initiating graceful shutdown")
        self.request_shutdown()

    def request_shutdown(self):
        self._shutdown.set()

    def _write_heartbeat(self, status: str = "running"):
        get_collection(HEARTBEAT).update_one(
            {"_id": "workers"},
            {
                "$set": {
                    "last_heartbeat": datetime.utcnow(),
                    "pid": os.getpid(),
                    "status": status,
                    "queues": {w.queue.name: w.queue.get_stats() for w in self.workers},
                }
            },
            upsert=True,
        )

    async def _heartbeat_loop(self):
        """Write heartbeat + queue stats to MongoDB for health monitoring."""
        while not self._shutdown.is_set():
            try:
                self._write_heartbeat()
            except PyMongoError as e:
                logger.error(f"Heartbeat write failed: {e}")

            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=HEARTBEAT_INTERVAL_SECONDS)
                break
            except asyncio.TimeoutError:
                continue

    async def _graceful_shutdown(self):
        logger.info("── Graceful Shutdown ──")
        for worker in self.workers:
            worker.request_shutdown()

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=SHUTDOWN_GRACE_SECONDS)
            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        try:
            self._write_heartbeat(status="stopped")
        except PyMongoError as e:
            logger.warning(f"Final heartbeat failed: {e}")

        logger.info("Shutdown complete")


async def main():
    scheduler = WorkerScheduler()
    await scheduler.start()
