import json
from typing import Optional

DEFAULT_TTL_SECONDS = 300


def cache_key(scope: str, idem_key: str) -> str:
    return f"idem:{scope}:{idem_key.strip()}"


async def get_cached_response(redis, scope: str, idem_key: str) -> Optional[dict]:
    raw = await redis.get(cache_key(scope, idem_key))
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        # treat a corrupt entry as a miss; the orders table still dedupes on the key
        return None


async def set_cached_response(redis, scope: str, idem_key: str, response: dict,
                              ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
    await redis.setex(cache_key(scope, idem_key), ttl_seconds, json.dumps(response, default=str))
