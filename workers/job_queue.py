"""
Job Queue — MongoDB-backed work items with retries, backoff and delays.

Every queue shares the `jobs` collection and is told apart by its `queue`
field. Lifecycle of one job:

    waiting ──claim──▶ active ──ok──▶ completed
       ▲                  │
       └──── backoff ─────┤ error, attempts left
                          └──────────▶ failed   (dead, alert raised)

Delivery is at-least-once: a worker that crashes mid-job leaves the job
`active` until a stale sweep (every consumer poll, rate limited) puts it
back. A job cut short by shutdown is released straight away. Handlers must
tolerate running more than once.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pymongo import ASCENDING, ReturnDocument

import config
from database import JOBS, get_collection, to_object_id
from workers.alerts import alert_dead_job

logger = logging.getLogger("outreach.job_queue")

# Queue / job names shared by the producer (campaign_manager) and the workers
EMAIL_DRAFTS_QUEUE = "email-drafts"
JOB_GENERATE_DRAFTS = "generate-drafts"

SEND_EMAIL_QUEUE = "send-email"
JOB_SEND_CAMPAIGN_EMAILS = "send-campaign-emails"
JOB_SEND_FOLLOW_UP_EMAIL = "send-follow-up-email"

STALE_JOB_ERROR = "StaleJobError: worker lost the job"


class JobStatus:
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"  # attempts exhausted


class JobQueue:
    """One named queue on top of the jobs collection."""

    def __init__(self, name: str, max_attempts: int = None, backoff_seconds: float = None):
        self.name = name
        self.max_attempts = max_attempts or config.JOB_MAX_ATTEMPTS
        self.backoff_seconds = config.JOB_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds

    def _build(self, job_name: str, payload: Dict[str, Any], delay_seconds: float, now: datetime) -> Dict:
        return {
            "queue": self.name,
            "name": job_name,
            "payload": payload,
            "status": JobStatus.WAITING,
            "attempts_made": 0,
            "max_attempts": self.max_attempts,
            "run_at": now + timedelta(seconds=delay_seconds),
            "last_error": None,
            "created_at": now,
            "updated_at": now,
        }

    def add(self, job_name: str, payload: Dict[str, Any], delay_seconds: float = 0,
            now: datetime = None) -> str:
        now = now or datetime.utcnow()
        job = self._build(job_name, payload, delay_seconds, now)
        job_id = str(get_collection(JOBS).insert_one(job).inserted_id)
        logger.info(f"job_added: {self.name}/{job_name} id={job_id} delay={delay_seconds}s")
        return job_id

    def add_bulk(self, jobs: Iterable[Tuple[str, Dict[str, Any]]], now: datetime = None) -> List[str]:
        now = now or datetime.utcnow()
        docs = [self._build(job_name, payload, 0, now) for job_name, payload in jobs]
        if not docs:
            return []
        result = get_collection(JOBS).insert_many(docs)
        logger.info(f"jobs_added: {self.name} count={len(docs)}")
        return [str(i) for i in result.inserted_ids]

    def claim_next(self, now: datetime = None) -> Optional[Dict]:
        """
        Atomically claim the earliest due job.
        Uses findOneAndUpdate so concurrent consumers never share a job.
        """
        now = now or datetime.utcnow()
        return get_collection(JOBS).find_one_and_update(
            {"queue": self.name, "status": JobStatus.WAITING, "run_at": {"$lte": now}},
            {
                "$set": {"status": JobStatus.ACTIVE, "claimed_at": now, "updated_at": now},
                "$inc": {"attempts_made": 1},
            },
            sort=[("run_at", ASCENDING), ("created_at", ASCENDING)],
            return_document=ReturnDocument.AFTER,
        )

    def complete(self, job: Dict):
        get_collection(JOBS).update_one(
            {"_id": job["_id"]},
            {"$set": {"status": JobStatus.COMPLETED, "finished_at": datetime.utcnow(),
                      "updated_at": datetime.utcnow()}},
        )

    def backoff_delay(self, attempts_made: int) -> float:
        """Exponential: base, 2×base, 4×base ... after the 1st, 2nd, 3rd failure."""
        return self.backoff_seconds * (2 ** max(attempts_made - 1, 0))

    def fail(self, job: Dict, error: str, now: datetime = None) -> bool:
        """
        Record a failed attempt. Re-queues with backoff while attempts remain.
        Returns True when the job is now dead.
        """
        now = now or datetime.utcnow()
        attempts = job.get("attempts_made", 1)
        max_attempts = job.get("max_attempts", self.max_attempts)
        if attempts >= max_attempts:
            get_collection(JOBS).update_one(
                {"_id": job["_id"]},
                {"$set": {"status": JobStatus.FAILED, "last_error": error, "finished_at": now, "updated_at": now}},
            )
            return True

        delay = self.backoff_delay(attempts)
        get_collection(JOBS).update_one(
            {"_id": job["_id"]},
            {"$set": {
                "status": JobStatus.WAITING,
                "last_error": error,
                "run_at": now + timedelta(seconds=delay),
                "updated_at": now,
            }},
        )
        logger.info(f"job_retry_scheduled: {job['_id']} attempt={attempts}/{max_attempts} in {delay}s")
        return False

    def release(self, job: Dict, now: datetime = None):
        """Hand an interrupted job back without charging it an attempt."""
        now = now or datetime.utcnow()
        get_collection(JOBS).update_one(
            {"_id": job["_id"], "status": JobStatus.ACTIVE},
            {"$set": {"status": JobStatus.WAITING, "run_at": now, "updated_at": now},
             "$inc": {"attempts_made": -1}},
        )
        logger.info(f"job_released: {job['_id']} name={job['name']}")

    def _stale_query(self, timeout_minutes: Optional[int], now: datetime) -> Dict[str, Any]:
        timeout_minutes = timeout_minutes or config.STALE_JOB_TIMEOUT_MINUTES
        cutoff = now - timedelta(minutes=timeout_minutes)
        return {"queue": self.name, "status": JobStatus.ACTIVE, "claimed_at": {"$lt": cutoff}}

    def fail_stale_exhausted(self, timeout_minutes: int = None, now: datetime = None) -> List[Dict]:
        """Kill stale jobs that already used every attempt. Returns the jobs now dead."""
        now = now or datetime.utcnow()
        dead = []
        for job in get_collection(JOBS).find(self._stale_query(timeout_minutes, now)):
            if job.get("attempts_made", 0) < job.get("max_attempts", self.max_attempts):
                continue
            result = get_collection(JOBS).update_one(
                {"_id": job["_id"], "status": JobStatus.ACTIVE},
                {"$set": {"status": JobStatus.FAILED, "last_error": STALE_JOB_ERROR,
                          "finished_at": now, "updated_at": now}},
            )
            if result.modified_count:
                dead.append(job)
        return dead

    def release_stale_active(self, timeout_minutes: int = None, now: datetime = None) -> int:
        """
        Put back jobs claimed by a worker that never finished them (e.g. crash).
        The lost run still counts as an attempt; call fail_stale_exhausted
        first so jobs with none left die instead.
        """
        now = now or datetime.utcnow()
        result = get_collection(JOBS).update_many(
            self._stale_query(timeout_minutes, now),
            {"$set": {"status": JobStatus.WAITING, "run_at": now, "updated_at": now}},
        )
        if result.modified_count:
            logger.info(f"Released {result.modified_count} stale active jobs on {self.name}")
        return result.modified_count

    def get(self, job_id: Any) -> Optional[Dict]:
        oid = to_object_id(job_id)
        return get_collection(JOBS).find_one({"_id": oid}) if oid else None

    def get_stats(self) -> Dict[str, int]:
        pipeline = [
            {"$match": {"queue": self.name}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ]
        return {r["_id"]: r["count"] for r in get_collection(JOBS).aggregate(pipeline)}


class UnknownJobError(Exception):
    pass


class QueueWorker:
    """
    Bounded pool of consumers for one queue.

    Subclasses set `queue_name` and implement `handle(job)`. Raising from
    `handle` fails the attempt (and eventually kills the job); returning
    normally completes it, which is also how skips are expressed.

    Lifecycle:
        worker = DraftWorker()
        await worker.run(shutdown_event)
    """

    queue_name: str = ""
    concurrency: int = 1

    def __init__(self, queue: JobQueue = None, concurrency: int = None):
        self.queue = queue or JobQueue(self.queue_name)
        if concurrency:
            self.concurrency = concurrency
        self._shutdown = asyncio.Event()
        self._last_stale_sweep: Optional[float] = None
        self.logger = logging.getLogger(f"outreach.{self.queue.name}")

    async def handle(self, job: Dict):
        raise NotImplementedError

    async def process(self, job: Dict, now: datetime = None) -> bool:
        """Run one claimed job. Returns True when it completed."""
        self.logger.info(f"Processing job {job['_id']} name={job['name']} attempt={job.get('attempts_made')}")
        try:
            await self.handle(job)
        except asyncio.CancelledError:
            # Shutdown cut the job short
            self.queue.release(job)
            raise
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            dead = self.queue.fail(job, error, now=now)
            if dead:
                self.logger.error(
                    f"job_dead: {job['_id']} name={job['name']} payload={job.get('payload')} error={error[:200]}",
                    exc_info=True,
                )
                await alert_dead_job(job, error)
            else:
                self.logger.warning(f"job_failed: {job['_id']} name={job['name']} error={error[:200]}")
            return False

        self.queue.complete(job)
        return True

    async def sweep_stale(self, now: datetime = None, force: bool = False) -> int:
        """
        Recover jobs lost by a crashed worker, at most once per
        STALE_SWEEP_INTERVAL_SECONDS. Returns how many went back to waiting.
        """
        tick = time.monotonic()
        if not force and self._last_stale_sweep is not None \
                and tick - self._last_stale_sweep < config.STALE_SWEEP_INTERVAL_SECONDS:
            return 0
        self._last_stale_sweep = tick
        for job in self.queue.fail_stale_exhausted(now=now):
            self.logger.error(f"job_dead: {job['_id']} name={job['name']} payload={job.get('payload')} "
                              f"error={STALE_JOB_ERROR}")
            await alert_dead_job(job, STALE_JOB_ERROR)
        return self.queue.release_stale_active(now=now)

    async def run_once(self, now: datetime = None) -> bool:
        """Claim and process one due job. Returns False when nothing is due."""
        await self.sweep_stale(now=now)
        job = self.queue.claim_next(now=now)
        if not job:
            return False
        await self.process(job, now=now)
        return True

    async def drain(self, now: datetime = None, max_jobs: int = 10_000) -> int:
        """Process due jobs until none are left. Returns how many ran."""
        count = 0
        await self.sweep_stale(now=now, force=True)
        while count < max_jobs and await self.run_once(now=now):
            count += 1
        return count

    async def _consume(self, slot: int, shutdown: asyncio.Event):
        while not shutdown.is_set() and not self._shutdown.is_set():
            try:
                ran = await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                # Store unreachable etc.; the consumer keeps polling
                self.logger.error(f"consumer_error slot={slot}: {e}", exc_info=True)
                ran = False
            if not ran:
                try:
                    await asyncio.wait_for(shutdown.wait(), timeout=config.QUEUE_POLL_INTERVAL_SECONDS)
                except asyncio.TimeoutError:
                    pass

    async def run(self, shutdown: asyncio.Event = None):
        """Run `concurrency` consumers until shutdown is signalled."""
        shutdown = shutdown or self._shutdown
        await self.sweep_stale(force=True)
        self.logger.info(f"worker_started queue={self.queue.name} concurrency={self.concurrency}")
        consumers = [
            asyncio.create_task(self._consume(slot, shutdown), name=f"{self.queue.name}-{slot}")
            for slot in range(self.concurrency)
        ]
        await asyncio.gather(*consumers)
        self.logger.info(f"worker_stopped queue={self.queue.name}")

    def request_shutdown(self):
        """Signal the consumers to stop after their current job."""
        self._shutdown.set()
