"""Recurring per-connection sync schedules.

Schedules live in Redis next to the arq queue so they survive restarts:

- ``prism:schedules`` hash: schedule id -> JSON definition
- ``prism:schedules:due`` sorted set: schedule id -> next fire time (unix seconds)

A periodic arq cron tick calls :meth:`SyncScheduler.dispatch_due`, which
enqueues every due sync through the normal queue (and its dedup keys) and
pushes the next fire time. Nothing sleeps inline. Cron expressions are
evaluated in UTC.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from arq.cron import next_cron
from redis.asyncio import Redis

from prism.db.enums import Platform, parse_platform
from prism.errors import ValidationError
from prism.sync.queue import JobQueue
from prism.timeutils import utcnow

logger = structlog.get_logger()

SCHEDULES_KEY = "prism:schedules"
DUE_KEY = "prism:schedules:due"

_FIELD_RANGES = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
)

CronOption = int | set[int] | None


@dataclass(frozen=True)
class CronSpec:
    """Parsed 5-field cron expression in arq's option format (weekday 0 = Monday)."""

    minute: CronOption = None
    hour: CronOption = None
    day: CronOption = None
    month: CronOption = None
    weekday: CronOption = None


def _parse_field(text: str, name: str, low: int, high: int) -> set[int] | None:
    values: set[int] = set()
    for part in text.split(","):
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValidationError(f"Invalid cron step in {name} field: {text!r}")
            step = int(step_text)
        if part == "*":
            if step == 1 and text == "*":
                return None
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            if not (start_text.isdigit() and end_text.isdigit()):
                raise ValidationError(f"Invalid cron range in {name} field: {text!r}")
            start, end = int(start_text), int(end_text)
        elif part.isdigit():
            start = int(part)
            end = high if step > 1 else start
        else:
            raise ValidationError(f"Invalid cron {name} field: {text!r}")
        if start < low or end > high or start > end:
            raise ValidationError(f"Cron {name} value out of range: {text!r}")
        values.update(range(start, end + 1, step))
    return values


def _to_option(values: set[int] | None) -> CronOption:
    if values is None:
        return None
    if len(values) == 1:
        return next(iter(values))
    return values


def parse_cron(expression: str) -> CronSpec:
    """Parse ``minute hour day month weekday`` with ``*``, ``n``, ``a-b``, ``*/n``, ``a-b/n`` and lists.

    Cron weekdays (0 or 7 = Sunday) are converted to Monday-based numbering.
    When both day and weekday are restricted, both must match.
    """
    fields = expression.split()
    if len(fields) != 5:
        raise ValidationError(f"Cron expression must have 5 fields: {expression!r}")
    parsed = {name: _parse_field(text, name, low, high) for text, (name, low, high) in zip(fields, _FIELD_RANGES)}
    weekdays = parsed["weekday"]
    if weekdays is not None:
        weekdays = {(d + 6) % 7 for d in weekdays}
        if len(weekdays) == 7:
            weekdays = None
    return CronSpec(
        minute=_to_option(parsed["minute"]),
        hour=_to_option(parsed["hour"]),
        day=_to_option(parsed["day"]),
        month=_to_option(parsed["month"]),
        weekday=_to_option(weekdays),
    )


def next_run(spec: CronSpec, after: datetime) -> datetime:
    """First fire time strictly after ``after`` (UTC, whole seconds)."""
    after = after.astimezone(timezone.utc)
    return next_cron(
        after,
        month=spec.month,
        day=spec.day,
        weekday=spec.weekday,
        hour=spec.hour,
        minute=spec.minute,
        second=0,
        microsecond=0,
    )


def schedule_id(platform: Platform, connection_id: int) -> str:
    return f"recurring-sync:{platform.value}:{connection_id}"


def _decode(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else value


class SyncScheduler:
    def __init__(self, redis: Redis, queue: JobQueue) -> None:
        self._redis = redis
        self._queue = queue

    async def schedule(
        self,
        user_id: int,
        connection_id: int,
        platform: str | Platform,
        cron: str,
        *,
        now: datetime | None = None,
    ) -> datetime:
        """Create or replace the recurring sync for a connection. Returns the first fire time."""
        platform = parse_platform(platform)
        spec = parse_cron(cron)
        fire_at = next_run(spec, now or utcnow())
        sid = schedule_id(platform, connection_id)
        definition = {
            "user_id": user_id,
            "connection_id": connection_id,
            "platform": platform.value,
            "cron": cron,
        }
        await self._redis.hset(SCHEDULES_KEY, sid, json.dumps(definition))
        await self._redis.zadd(DUE_KEY, {sid: fire_at.timestamp()})
        logger.info("sync_scheduled", schedule_id=sid, cron=cron, next_run=fire_at.isoformat())
        return fire_at

    async def cancel(self, connection_id: int, platform: str | Platform) -> bool:
        """Remove a connection's recurring sync. Returns False if none existed."""
        sid = schedule_id(parse_platform(platform), connection_id)
        removed = await self._redis.hdel(SCHEDULES_KEY, sid)
        await self._redis.zrem(DUE_KEY, sid)
        if removed:
            logger.info("sync_schedule_cancelled", schedule_id=sid)
        return bool(removed)

    async def get(self, connection_id: int, platform: str | Platform) -> dict[str, Any] | None:
        raw = await self._redis.hget(SCHEDULES_KEY, schedule_id(parse_platform(platform), connection_id))
        if raw is None:
            return None
        return json.loads(_decode(raw))

    async def dispatch_due(self, now: datetime | None = None) -> int:
        """Enqueue every schedule whose fire time has passed. Returns the number enqueued."""
        now = now or utcnow()
        due = await self._redis.zrangebyscore(DUE_KEY, "-inf", now.timestamp())
        enqueued = 0
        for member in due:
            sid = _decode(member)
            raw = await self._redis.hget(SCHEDULES_KEY, sid)
            if raw is None:
                # cancelled between the two reads
                await self._redis.zrem(DUE_KEY, sid)
                continue
            definition = json.loads(_decode(raw))
            platform = Platform(definition["platform"])
            try:
                spec = parse_cron(definition["cron"])
            except ValidationError:
                logger.error("sync_schedule_invalid", schedule_id=sid, cron=definition["cron"])
                await self._redis.zrem(DUE_KEY, sid)
                continue

            await self._redis.zadd(DUE_KEY, {sid: next_run(spec, now).timestamp()})
            job = await self._queue.enqueue_sync(
                definition["user_id"], definition["connection_id"], platform, now=now
            )
            if job is not None:
                enqueued += 1
        if due:
            logger.info("sync_schedules_dispatched", due=len(due), enqueued=enqueued)
        return enqueued
