import math
import time
from dataclasses import dataclass
from typing import Optional

BUCKET_TTL_SECONDS = 3600


@dataclass(frozen=True)
class BucketDecision:
    allowed: bool
    remaining: int
    retry_after: int


async def take_token(redis, key: str, capacity: int, refill_per_sec: float,
                     now: Optional[float] = None) -> BucketDecision:
    """Token bucket keyed per client; state lives in a redis hash so every worker shares it."""
    now = time.time() if now is None else now
    bucket_key = f"rl:{key}"

    data = await redis.hgetall(bucket_key)
    tokens = float(_field(data, "tokens", capacity))
    last = float(_field(data, "last", now))

    # Refill
    tokens = min(capacity, tokens + max(0.0, now - last) * refill_per_sec)

    allowed = tokens >= 1.0
    if allowed:
        tokens -= 1.0
    await redis.hset(bucket_key, mapping={"tokens": tokens, "last": now})
    await redis.expire(bucket_key, BUCKET_TTL_SECONDS)

    if allowed:
        retry_after = 0
    elif refill_per_sec > 0:
        retry_after = math.ceil((1.0 - tokens) / refill_per_sec)
    else:
        retry_after = BUCKET_TTL_SECONDS
    return BucketDecision(allowed=allowed, remaining=int(tokens), retry_after=retry_after)


def _field(data: dict, name: str, default):
    # decode_responses=True gives str keys, raw clients give bytes
    if name in data:
        return data[name]
    return data.get(name.encode(), default)
