import json

import pytest

from pubdate.models.job import QUEUED, RUNNING, ExtractOptions, Job
from pubdate.services.broker import MemoryBroker, RedisBroker, create_broker


def _job(url="https://example.com/a", priority=0, **options):
    return Job(url=url, options=ExtractOptions(priority=priority, **options))


@pytest.fixture()
def broker(fake_clock):
    return MemoryBroker(lease_seconds=30, clock=fake_clock)


def test_memory_broker_serves_lowest_priority_first(broker):
    low = _job("https://example.com/low", priority=5)
    high = _job("https://example.com/high", priority=0)
    broker.enqueue(low)
    broker.enqueue(high)

    first = broker.dequeue(timeout=0)
    second = broker.dequeue(timeout=0)

    assert first.url == "https://example.com/high"
    assert second.url == "https://example.com/low"
    assert first.status == RUNNING
    assert first.attempts == 1


def test_memory_broker_keeps_fifo_within_priority(broker):
    jobs = [_job(f"https://example.com/{index}") for index in range(3)]
    for job in jobs:
        broker.enqueue(job)

    assert [broker.dequeue(timeout=0).url for _ in jobs] == [job.url for job in jobs]
    assert broker.dequeue(timeout=0) is None


def test_delayed_job_waits_for_clock(broker, fake_clock):
    broker.enqueue(_job(), delay=10)

    assert broker.dequeue(timeout=0) is None
    fake_clock.advance(10)
    assert broker.dequeue(timeout=0).url == "https://example.com/a"


def test_ack_publishes_to_subscribers(broker):
    received = []
    unsubscribe = broker.subscribe(received.append)
    broker.enqueue(_job())
    job = broker.dequeue(timeout=0)

    broker.ack(job, {"job_id": job.id, "status": "SUCCEEDED"})
    unsubscribe()
    broker.ack(job, {"job_id": job.id, "status": "SUCCEEDED"})

    assert received == [{"job_id": job.id, "status": "SUCCEEDED"}]
    assert broker.pending() == 0


def test_retry_requeues_with_delay(broker, fake_clock):
    broker.enqueue(_job())
    job = broker.dequeue(timeout=0)

    broker.retry(job, 5)

    assert job.status == QUEUED
    assert broker.pending() == 1
    assert broker.dequeue(timeout=0) is None
    fake_clock.advance(5)
    assert broker.dequeue(timeout=0).attempts == 2


def test_expired_lease_is_requeued(broker, fake_clock):
    broker.enqueue(_job())
    broker.dequeue(timeout=0)

    assert broker.requeue_expired() == 0
    fake_clock.advance(31)
    assert broker.requeue_expired() == 1

    again = broker.dequeue(timeout=0)
    assert again.attempts == 2
    assert broker.pending() == 1


def test_closed_broker_stops_blocking(broker):
    broker.close()
    assert broker.dequeue() is None


class FakePubSub:
    def __init__(self):
        self.handlers = {}

    def subscribe(self, **handlers):
        self.handlers.update(handlers)

    def run_in_thread(self, sleep_time=0.0, daemon=False):
        return FakeThread()

    def close(self):
        pass


class FakeThread:
    def __init__(self):
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeRedis:
    """Just enough of the sorted-set, string and pub/sub surface."""

    def __init__(self):
        self.zsets = {}
        self.values = {}
        self.published = []
        self.pubsubs = []

    def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)

    def zrem(self, key, member):
        return 1 if self.zsets.get(key, {}).pop(member, None) is not None else 0

    def zrangebyscore(self, key, low, high):
        low = float(low)
        items = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        return [member for member, score in items if low <= score <= high]

    def zpopmin(self, key, count=1):
        items = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])[:count]
        for member, _ in items:
            del self.zsets[key][member]
        return items

    def bzpopmin(self, key, timeout=0):
        popped = self.zpopmin(key, 1)
        if not popped:
            return None
        member, score = popped[0]
        return key, member, score

    def zcard(self, key):
        return len(self.zsets.get(key, {}))

    def set(self, key, value):
        self.values[key] = value

    def get(self, key):
        return self.values.get(key)

    def delete(self, key):
        self.values.pop(key, None)

    def publish(self, channel, message):
        self.published.append((channel, message))

    def pubsub(self, ignore_subscribe_messages=False):
        pubsub = FakePubSub()
        self.pubsubs.append(pubsub)
        return pubsub


@pytest.fixture()
def redis_broker(fake_clock):
    return RedisBroker(FakeRedis(), prefix="test", lease_seconds=30, clock=fake_clock)


def test_redis_broker_round_trip(redis_broker):
    job = _job(check_modified=True)
    redis_broker.enqueue(job)
    assert redis_broker.pending() == 1

    leased = redis_broker.dequeue(timeout=0)
    assert leased.id == job.id
    assert leased.attempts == 1
    assert leased.options.check_modified is True
    assert redis_broker.client.zcard("test:leases") == 1

    redis_broker.ack(leased, {"job_id": leased.id, "status": "SUCCEEDED"})

    channel, message = redis_broker.client.published[0]
    assert channel == "test:completed"
    assert json.loads(message) == {"job_id": leased.id, "status": "SUCCEEDED"}
    assert redis_broker.pending() == 0
    assert redis_broker.client.get(f"test:job:{leased.id}") is None


def test_redis_broker_priority_tiers(redis_broker, fake_clock):
    redis_broker.enqueue(_job("https://example.com/later", priority=1))
    fake_clock.advance(5)
    redis_broker.enqueue(_job("https://example.com/urgent", priority=0))

    assert redis_broker.dequeue(timeout=0).url == "https://example.com/urgent"


def test_redis_broker_promotes_delayed_jobs(redis_broker, fake_clock):
    redis_broker.enqueue(_job(), delay=10)
    assert redis_broker.client.zcard("test:delayed") == 1

    fake_clock.advance(11)
    job = redis_broker.dequeue(timeout=0.05)

    assert job is not None
    assert redis_broker.client.zcard("test:delayed") == 0


def test_redis_broker_subscribe_decodes_messages(redis_broker):
    received = []
    unsubscribe = redis_broker.subscribe(received.append)
    handler = redis_broker.client.pubsubs[0].handlers["test:completed"]

    handler({"data": json.dumps({"job_id": "1"})})
    handler({"data": "not json"})
    unsubscribe()

    assert received == [{"job_id": "1"}]


def test_redis_broker_requeues_expired_leases(redis_broker, fake_clock):
    redis_broker.enqueue(_job())
    redis_broker.dequeue(timeout=0)

    fake_clock.advance(31)
    assert redis_broker.requeue_expired() == 1
    assert redis_broker.client.zcard("test:ready") == 1


def test_create_broker_requires_redis_url():
    with pytest.raises(RuntimeError):
        create_broker("redis")
    assert isinstance(create_broker("memory"), MemoryBroker)
