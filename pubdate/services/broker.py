from __future__ import annotations

import heapq
import itertools
import json
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import redis
import structlog

from pubdate.models.job import QUEUED, RETRYING, RUNNING, Job

logger = structlog.get_logger(__name__)

CompletionCallback = Callable[[dict[str, Any]], None]
Unsubscribe = Callable[[], None]

DEFAULT_LEASE_SECONDS = 90.0


class JobBroker(ABC):
    """Durable hand-off between the job queue and the worker pool.

    Lower ``priority`` numbers are served first. A dequeued job is leased; it
    is either acknowledged, retried, or requeued once its lease expires.
    """

    def __init__(self, lease_seconds: float = DEFAULT_LEASE_SECONDS) -> None:
        self.lease_seconds = lease_seconds

    @abstractmethod
    def enqueue(self, job: Job, delay: float = 0.0) -> None: ...

    @abstractmethod
    def dequeue(self, timeout: Optional[float] = None) -> Optional[Job]: ...

    @abstractmethod
    def ack(self, job: Job, outcome: dict[str, Any]) -> None:
        """Finish a leased job and publish its completion message."""

    @abstractmethod
    def retry(self, job: Job, delay: float) -> None: ...

    @abstractmethod
    def subscribe(self, callback: CompletionCallback) -> Unsubscribe: ...

    @abstractmethod
    def requeue_expired(self) -> int: ...

    @abstractmethod
    def pending(self) -> int: ...

    def close(self) -> None:
        return None


class MemoryBroker(JobBroker):
    """In-process broker backed by two heaps and a condition variable."""

    def __init__(
        self,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(lease_seconds)
        self.clock = clock
        self._cond = threading.Condition()
        self._ready: list[tuple[int, int, str]] = []
        self._delayed: list[tuple[float, int, str]] = []
        self._jobs: dict[str, Job] = {}
        self._leases: dict[str, float] = {}
        self._subscribers: list[CompletionCallback] = []
        self._seq = itertools.count()
        self._closed = False

    def enqueue(self, job: Job, delay: float = 0.0) -> None:
        with self._cond:
            job.mark(QUEUED)
            self._jobs[job.id] = job
            if delay > 0:
                heapq.heappush(
                    self._delayed, (self.clock() + delay, next(self._seq), job.id)
                )
            else:
                heapq.heappush(
                    self._ready, (job.options.priority, next(self._seq), job.id)
                )
            self._cond.notify()
        logger.debug(event="broker.enqueued", job_id=job.id, delay=delay)

    def _promote(self, now: float) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is not None:
                heapq.heappush(self._ready, (job.options.priority, next(self._seq), job_id))

    def dequeue(self, timeout: Optional[float] = None) -> Optional[Job]:
        end = None if timeout is None else self.clock() + timeout
        with self._cond:
            while True:
                now = self.clock()
                self._promote(now)
                while self._ready:
                    _, _, job_id = heapq.heappop(self._ready)
                    job = self._jobs.get(job_id)
                    if job is None:
                        continue
                    job.attempts += 1
                    job.mark(RUNNING)
                    self._leases[job_id] = now + self.lease_seconds
                    return job
                if self._closed:
                    return None
                wait_for: Optional[float] = None
                if self._delayed:
                    wait_for = max(self._delayed[0][0] - now, 0.0)
                if end is not None:
                    left = end - now
                    if left <= 0:
                        return None
                    wait_for = left if wait_for is None else min(wait_for, left)
                self._cond.wait(wait_for)

    def ack(self, job: Job, outcome: dict[str, Any]) -> None:
        with self._cond:
            self._leases.pop(job.id, None)
            self._jobs.pop(job.id, None)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(outcome)

    def retry(self, job: Job, delay: float) -> None:
        with self._cond:
            self._leases.pop(job.id, None)
            job.mark(RETRYING, error=job.error, error_type=job.errorType)
        self.enqueue(job, delay)

    def subscribe(self, callback: CompletionCallback) -> Unsubscribe:
        with self._cond:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._cond:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def requeue_expired(self) -> int:
        now = self.clock()
        with self._cond:
            expired = [job_id for job_id, until in self._leases.items() if until <= now]
            jobs = []
            for job_id in expired:
                self._leases.pop(job_id, None)
                job = self._jobs.get(job_id)
                if job is not None:
                    jobs.append(job)
        for job in jobs:
            logger.warning(event="broker.lease_expired", job_id=job.id, url=job.url)
            self.enqueue(job)
        return len(jobs)

    def pending(self) -> int:
        with self._cond:
            return len(self._jobs)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class RedisBroker(JobBroker):
    """Broker on Redis: a delayed sorted set, a ready sorted set and pub/sub.

    Ready jobs are scored by ``priority`` tier then enqueue time, so
    ``ZPOPMIN`` hands out the most urgent, oldest job atomically.
    """

    PRIORITY_WEIGHT = 1e12

    def __init__(
        self,
        client: Any,
        *,
        prefix: str = "pubdate",
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], float] = time.time,
        poll_seconds: float = 1.0,
    ) -> None:
        super().__init__(lease_seconds)
        self.client = client
        self.prefix = prefix
        self.clock = clock
        self.poll_seconds = poll_seconds
        self.ready_key = f"{prefix}:ready"
        self.delayed_key = f"{prefix}:delayed"
        self.leases_key = f"{prefix}:leases"
        self.channel = f"{prefix}:completed"
        self._pubsub_threads: list[Any] = []

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisBroker":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _save(self, job: Job) -> None:
        self.client.set(self._job_key(job.id), json.dumps(job.to_dict()))

    def _load(self, job_id: str) -> Optional[Job]:
        raw = self.client.get(self._job_key(job_id))
        if not raw:
            return None
        return Job.from_dict(json.loads(raw))

    def _ready_score(self, job: Job) -> float:
        return job.options.priority * self.PRIORITY_WEIGHT + self.clock()

    def enqueue(self, job: Job, delay: float = 0.0) -> None:
        job.mark(QUEUED)
        self._save(job)
        if delay > 0:
            self.client.zadd(self.delayed_key, {job.id: self.clock() + delay})
        else:
            self.client.zadd(self.ready_key, {job.id: self._ready_score(job)})
        logger.debug(event="broker.enqueued", job_id=job.id, delay=delay, backend="redis")

    def _promote(self) -> None:
        due = self.client.zrangebyscore(self.delayed_key, "-inf", self.clock())
        for job_id in due:
            # Only the caller whose ZREM succeeds moves the job.
            if self.client.zrem(self.delayed_key, job_id):
                job = self._load(job_id)
                if job is not None:
                    self.client.zadd(self.ready_key, {job_id: self._ready_score(job)})

    def _claim(self, job_id: str) -> Optional[Job]:
        job = self._load(job_id)
        if job is None:
            return None
        job.attempts += 1
        job.mark(RUNNING)
        self._save(job)
        self.client.zadd(self.leases_key, {job_id: self.clock() + self.lease_seconds})
        return job

    def dequeue(self, timeout: Optional[float] = None) -> Optional[Job]:
        end = None if timeout is None else time.monotonic() + timeout
        while True:
            self._promote()
            popped = self.client.zpopmin(self.ready_key, 1)
            if popped:
                job = self._claim(popped[0][0])
                if job is not None:
                    return job
                continue
            wait_for = self.poll_seconds
            if end is not None:
                left = end - time.monotonic()
                if left <= 0:
                    return None
                wait_for = min(wait_for, left)
            blocked = self.client.bzpopmin(self.ready_key, timeout=max(wait_for, 0.01))
            if blocked:
                _, job_id, _ = blocked
                job = self._claim(job_id)
                if job is not None:
                    return job

    def ack(self, job: Job, outcome: dict[str, Any]) -> None:
        self.client.zrem(self.leases_key, job.id)
        self.client.delete(self._job_key(job.id))
        self.client.publish(self.channel, json.dumps(outcome))

    def retry(self, job: Job, delay: float) -> None:
        self.client.zrem(self.leases_key, job.id)
        job.mark(RETRYING, error=job.error, error_type=job.errorType)
        self.enqueue(job, delay)

    def subscribe(self, callback: CompletionCallback) -> Unsubscribe:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)

        def _handler(message: dict[str, Any]) -> None:
            try:
                payload = json.loads(message["data"])
            except (TypeError, ValueError):
                logger.warning(event="broker.bad_message", channel=self.channel)
                return
            callback(payload)

        pubsub.subscribe(**{self.channel: _handler})
        thread = pubsub.run_in_thread(sleep_time=0.1, daemon=True)
        self._pubsub_threads.append(thread)

        def unsubscribe() -> None:
            thread.stop()
            pubsub.close()

        return unsubscribe

    def requeue_expired(self) -> int:
        expired = self.client.zrangebyscore(self.leases_key, "-inf", self.clock())
        count = 0
        for job_id in expired:
            if not self.client.zrem(self.leases_key, job_id):
                continue
            job = self._load(job_id)
            if job is None:
                continue
            logger.warning(event="broker.lease_expired", job_id=job.id, url=job.url)
            self.enqueue(job)
            count += 1
        return count

    def pending(self) -> int:
        return int(
            self.client.zcard(self.ready_key)
            + self.client.zcard(self.delayed_key)
            + self.client.zcard(self.leases_key)
        )

    def close(self) -> None:
        for thread in self._pubsub_threads:
            thread.stop()
        self._pubsub_threads.clear()


def create_broker(
    backend: str = "memory",
    *,
    redis_url: Optional[str] = None,
    prefix: str = "pubdate",
    lease_seconds: float = DEFAULT_LEASE_SECONDS,
) -> JobBroker:
    if backend.strip().lower() == "redis":
        if not redis_url:
            raise RuntimeError("QUEUE_BACKEND is redis but REDIS_URL is not set")
        return RedisBroker.from_url(redis_url, prefix=prefix, lease_seconds=lease_seconds)
    return MemoryBroker(lease_seconds)


__all__ = ["JobBroker", "MemoryBroker", "RedisBroker", "create_broker"]
