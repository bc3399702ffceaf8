"""Dedup store, job queues, CRM sink and realtime notifier.

Each capability is a small protocol with an in-memory implementation for tests
and single-process runs, and a Redis implementation built on ``redis.asyncio``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from redis.asyncio import Redis

from .agents.crm import CrmPayload
from .config import PipelineSettings
from .conversations.schemas import DeliveryRequest, InboundMessageJob, RealtimeEvent

logger = logging.getLogger(__name__)

INBOUND_QUEUE = "queue:ai-processing"
DELIVERY_QUEUE = "queue:outbound-delivery"
CRM_QUEUE = "queue:crm-sync"
BROADCAST_CHANNEL = "broadcast:conversations"


def tenant_channel(tenant_id: str) -> str:
    return f"tenant:{tenant_id}:conversations"


class DedupStore(Protocol):
    async def claim(self, key: str, ttl_seconds: int) -> bool: ...

    async def release(self, key: str) -> None: ...


class InboundQueue(Protocol):
    async def enqueue(self, job: InboundMessageJob) -> bool: ...

    async def requeue(self, job: InboundMessageJob) -> None: ...

    async def dequeue(self, timeout: float = 1.0) -> InboundMessageJob | None: ...


class DeliveryQueue(Protocol):
    async def enqueue(self, request: DeliveryRequest) -> None: ...


class CrmSink(Protocol):
    async def submit(self, payload: CrmPayload) -> None: ...


class RealtimeNotifier(Protocol):
    async def publish(self, event: RealtimeEvent) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementations


def _drop_expired(expiry: dict[str, float], now: float) -> None:
    for key in [key for key, expires in expiry.items() if expires <= now]:
        del expiry[key]


class InMemoryDedupStore:
    def __init__(self) -> None:
        self._expiry: dict[str, float] = {}

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        now = time.monotonic()
        _drop_expired(self._expiry, now)
        if key in self._expiry:
            return False
        self._expiry[key] = now + ttl_seconds
        return True

    async def release(self, key: str) -> None:
        self._expiry.pop(key, None)


class InMemoryInboundQueue:
    """FIFO queue that accepts each job id once per ``job_id_ttl_seconds``."""

    def __init__(self, *, job_id_ttl_seconds: int = 86400) -> None:
        self._queue: asyncio.Queue[InboundMessageJob] = asyncio.Queue()
        self._job_ids: dict[str, float] = {}
        self._job_id_ttl = job_id_ttl_seconds

    async def enqueue(self, job: InboundMessageJob) -> bool:
        now = time.monotonic()
        _drop_expired(self._job_ids, now)
        if job.job_id in self._job_ids:
            return False
        self._job_ids[job.job_id] = now + self._job_id_ttl
        await self._queue.put(job)
        return True

    async def requeue(self, job: InboundMessageJob) -> None:
        await self._queue.put(job)

    async def dequeue(self, timeout: float = 1.0) -> InboundMessageJob | None:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()


@dataclass
class InMemoryDeliveryQueue:
    requests: list[DeliveryRequest] = field(default_factory=list)

    async def enqueue(self, request: DeliveryRequest) -> None:
        self.requests.append(request)


@dataclass
class InMemoryCrmSink:
    payloads: list[CrmPayload] = field(default_factory=list)

    async def submit(self, payload: CrmPayload) -> None:
        self.payloads.append(payload)


@dataclass
class InMemoryRealtimeNotifier:
    published: list[tuple[str, RealtimeEvent]] = field(default_factory=list)

    async def publish(self, event: RealtimeEvent) -> None:
        self.published.append((BROADCAST_CHANNEL, event))
        self.published.append((tenant_channel(event.tenant_id), event))


# ---------------------------------------------------------------------------
# Redis implementations


class RedisDedupStore:
    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._redis.set(key, "1", nx=True, ex=ttl_seconds))

    async def release(self, key: str) -> None:
        await self._redis.delete(key)


class RedisInboundQueue:
    """List-backed queue; a job id marker makes ``enqueue`` idempotent."""

    def __init__(
        self,
        redis: Redis,
        name: str = INBOUND_QUEUE,
        *,
        job_id_ttl_seconds: int = 86400,
    ) -> None:
        self._redis = redis
        self._name = name
        self._job_id_ttl = job_id_ttl_seconds

    async def enqueue(self, job: InboundMessageJob) -> bool:
        marker = f"{self._name}:job:{job.job_id}"
        if not await self._redis.set(marker, "1", nx=True, ex=self._job_id_ttl):
            return False
        await self._redis.lpush(self._name, job.model_dump_json())
        return True

    async def requeue(self, job: InboundMessageJob) -> None:
        await self._redis.lpush(self._name, job.model_dump_json())

    async def dequeue(self, timeout: float = 1.0) -> InboundMessageJob | None:
        item = await self._redis.brpop([self._name], timeout=timeout)
        if not item:
            return None
        _, raw = item
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return InboundMessageJob.model_validate_json(raw)


class RedisDeliveryQueue:
    def __init__(self, redis: Redis, name: str = DELIVERY_QUEUE) -> None:
        self._redis = redis
        self._name = name

    async def enqueue(self, request: DeliveryRequest) -> None:
        await self._redis.lpush(self._name, request.model_dump_json())


class RedisCrmSink:
    def __init__(self, redis: Redis, name: str = CRM_QUEUE) -> None:
        self._redis = redis
        self._name = name

    async def submit(self, payload: CrmPayload) -> None:
        await self._redis.lpush(self._name, payload.model_dump_json())


class RedisRealtimeNotifier:
    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def publish(self, event: RealtimeEvent) -> None:
        message: dict[str, Any] = {"event": event.event, "data": event.model_dump(mode="json")}
        body = json.dumps(message)
        await self._redis.publish(BROADCAST_CHANNEL, body)
        await self._redis.publish(tenant_channel(event.tenant_id), body)


# ---------------------------------------------------------------------------
# Wiring


@dataclass
class QueueBackends:
    dedup: DedupStore
    inbound: InboundQueue
    delivery: DeliveryQueue
    crm: CrmSink
    realtime: RealtimeNotifier


def in_memory_backends(settings: PipelineSettings | None = None) -> QueueBackends:
    settings = settings or PipelineSettings()
    return QueueBackends(
        dedup=InMemoryDedupStore(),
        inbound=InMemoryInboundQueue(job_id_ttl_seconds=settings.dedup_ttl_seconds),
        delivery=InMemoryDeliveryQueue(),
        crm=InMemoryCrmSink(),
        realtime=InMemoryRealtimeNotifier(),
    )


def redis_backends(redis: Redis, settings: PipelineSettings | None = None) -> QueueBackends:
    settings = settings or PipelineSettings()
    return QueueBackends(
        dedup=RedisDedupStore(redis),
        inbound=RedisInboundQueue(redis, job_id_ttl_seconds=settings.dedup_ttl_seconds),
        delivery=RedisDeliveryQueue(redis),
        crm=RedisCrmSink(redis),
        realtime=RedisRealtimeNotifier(redis),
    )


def build_backends(settings: PipelineSettings) -> QueueBackends:
    """Redis backed queues when ``REDIS_URL`` is configured, in-memory otherwise."""

    if settings.redis_url:
        logger.info("Using Redis queue backends")
        return redis_backends(Redis.from_url(settings.redis_url), settings)
    logger.info("REDIS_URL not set; using in-memory queue backends")
    return in_memory_backends(settings)
