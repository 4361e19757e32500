"""
Redis-backed queue channel. Lease bookkeeping runs in Lua so that claiming,
acknowledging and abandoning a message are atomic against concurrent workers.

Per queue:
  queue:<name>            LIST   ready message ids (LPUSH in, RPOP out)
  queue:<name>:inflight   ZSET   leased ids scored by lease deadline
  queue:<name>:messages   HASH   id -> body
  queue:<name>:receives   HASH   id -> receive count
  queue:<name>:receipts   HASH   id -> receipt of the current lease
  queue:<name>:dlq        LIST   dead letters as JSON
"""
import asyncio
import json
import time
import uuid
from typing import Callable

import redis.asyncio as redis

from app.config import Settings, settings
from app.queue import DeadLetter, Lease, QueueChannel, QueueDepth, QueueMessage

_redis: redis.Redis | None = None

# KEYS: ready, inflight, messages, receives, receipts  ARGV: now, visibility, receipt
LEASE_SCRIPT = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, id in ipairs(expired) do
  redis.call('ZREM', KEYS[2], id)
  redis.call('HDEL', KEYS[5], id)
  redis.call('RPUSH', KEYS[1], id)
end
while true do
  local id = redis.call('RPOP', KEYS[1])
  if not id then return nil end
  local body = redis.call('HGET', KEYS[3], id)
  if body then
    local count = redis.call('HINCRBY', KEYS[4], id, 1)
    redis.call('ZADD', KEYS[2], tonumber(ARGV[1]) + tonumber(ARGV[2]), id)
    redis.call('HSET', KEYS[5], id, ARGV[3])
    return {id, body, count}
  end
end
"""

# Shared guard: the caller still holds an unexpired lease.
_HELD = """
if redis.call('HGET', KEYS[5], ARGV[1]) ~= ARGV[2] then return 0 end
local deadline = redis.call('ZSCORE', KEYS[2], ARGV[1])
if not deadline or tonumber(deadline) <= tonumber(ARGV[3]) then return 0 end
"""

# KEYS: ready, inflight, messages, receives, receipts  ARGV: id, receipt, now
ACK_SCRIPT = _HELD + """
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[3], ARGV[1])
redis.call('HDEL', KEYS[4], ARGV[1])
redis.call('HDEL', KEYS[5], ARGV[1])
return 1
"""

# ARGV: id, receipt, now, delay
ABANDON_SCRIPT = _HELD + """
redis.call('HDEL', KEYS[5], ARGV[1])
if tonumber(ARGV[4]) <= 0 then
  redis.call('ZREM', KEYS[2], ARGV[1])
  redis.call('RPUSH', KEYS[1], ARGV[1])
else
  redis.call('ZADD', KEYS[2], tonumber(ARGV[3]) + tonumber(ARGV[4]), ARGV[1])
end
return 1
"""

# KEYS: ready, inflight, messages, receives, receipts, dlq  ARGV: id, receipt, now, letter
DEAD_LETTER_SCRIPT = _HELD + """
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[3], ARGV[1])
redis.call('HDEL', KEYS[4], ARGV[1])
redis.call('HDEL', KEYS[5], ARGV[1])
redis.call('LPUSH', KEYS[6], ARGV[4])
return 1
"""


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def _keys(queue_name: str) -> list[str]:
    base = f"queue:{queue_name}"
    return [base, f"{base}:inflight", f"{base}:messages", f"{base}:receives", f"{base}:receipts"]


def _dlq_key(queue_name: str) -> str:
    return f"queue:{queue_name}:dlq"


class RedisQueueChannel(QueueChannel):
    def __init__(
        self,
        config: Settings = settings,
        client: redis.Redis | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.visibility_timeout = config.queue_visibility_timeout
        self.poll_interval = config.queue_poll_interval
        self._client = client
        # lease deadlines are wall-clock scores shared by every worker
        self._clock = clock
        self._scripts: dict[str, object] = {}

    async def _redis(self) -> redis.Redis:
        if self._client is None:
            self._client = await get_redis()
        return self._client

    async def _run(self, name: str, source: str, keys: list[str], args: list):
        r = await self._redis()
        if name not in self._scripts:
            self._scripts[name] = r.register_script(source)
        return await self._scripts[name](keys=keys, args=args)

    async def enqueue(self, queue_name: str, payload: str) -> str:
        message_id = uuid.uuid4().hex
        ready, _inflight, messages, _receives, _receipts = _keys(queue_name)
        r = await self._redis()
        async with r.pipeline(transaction=True) as pipe:
            pipe.hset(messages, message_id, payload)
            pipe.lpush(ready, message_id)
            await pipe.execute()
        return message_id

    async def lease(self, queue_name: str, wait_seconds: float = 0) -> Lease | None:
        deadline = time.monotonic() + wait_seconds
        while True:
            receipt = uuid.uuid4().hex
            result = await self._run(
                "lease", LEASE_SCRIPT, _keys(queue_name), [self._clock(), self.visibility_timeout, receipt]
            )
            if result:
                message_id, body, count = result
                return Lease(queue_name, QueueMessage(message_id, body, int(count)), receipt)
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(self.poll_interval)

    async def acknowledge(self, lease: Lease) -> bool:
        args = [lease.message.message_id, lease.receipt, self._clock()]
        return bool(await self._run("ack", ACK_SCRIPT, _keys(lease.queue_name), args))

    async def abandon(self, lease: Lease, delay_seconds: int = 0) -> bool:
        args = [lease.message.message_id, lease.receipt, self._clock(), delay_seconds]
        return bool(await self._run("abandon", ABANDON_SCRIPT, _keys(lease.queue_name), args))

    async def dead_letter(self, lease: Lease, reason: str) -> bool:
        letter = json.dumps({
            "message_id": lease.message.message_id,
            "body": lease.message.body,
            "receive_count": lease.message.receive_count,
            "reason": reason,
            "failed_at": self._clock(),
        })
        keys = _keys(lease.queue_name) + [_dlq_key(lease.queue_name)]
        args = [lease.message.message_id, lease.receipt, self._clock(), letter]
        return bool(await self._run("dead_letter", DEAD_LETTER_SCRIPT, keys, args))

    async def dead_letters(self, queue_name: str, limit: int = 10) -> list[DeadLetter]:
        r = await self._redis()
        raw = await r.lrange(_dlq_key(queue_name), -limit, -1)
        # oldest letter sits at the RPOP end
        raw.reverse()
        return [DeadLetter(**json.loads(item), handle=item) for item in raw]

    async def remove_dead_letter(self, queue_name: str, letter: DeadLetter) -> bool:
        r = await self._redis()
        return bool(await r.lrem(_dlq_key(queue_name), -1, letter.handle))

    async def depth(self, queue_name: str) -> QueueDepth:
        ready, inflight, *_ = _keys(queue_name)
        r = await self._redis()
        async with r.pipeline(transaction=False) as pipe:
            pipe.llen(ready)
            pipe.zcard(inflight)
            pipe.llen(_dlq_key(queue_name))
            waiting, in_flight, dead = await pipe.execute()
        return QueueDepth(int(waiting), int(in_flight), int(dead))

    async def peek(self, queue_name: str, limit: int = 10) -> list[str]:
        ready, _inflight, messages, *_ = _keys(queue_name)
        r = await self._redis()
        ids = await r.lrange(ready, -limit, -1)
        if not ids:
            return []
        # RPOP end is the head of the queue
        ids.reverse()
        bodies = await r.hmget(messages, ids)
        return [b for b in bodies if b is not None]

    async def close(self) -> None:
        if self._client is not None and self._client is _redis:
            await close_redis()
        self._client = None
        self._scripts.clear()
