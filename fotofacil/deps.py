from typing import Optional

import httpx
from fastapi import Depends, Request
from redis.asyncio import Redis

from .config import Settings, get_settings
from .errors import RateLimitedError
from .payments import MercadoPagoClient
from .rate_limit import take_token
from .storage import GCSStorage

_redis: Optional[Redis] = None


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(get_settings().redis_url, decode_responses=True)
    return _redis


async def get_http_client():
    async with httpx.AsyncClient() as client:
        yield client


def get_storage(
    settings: Settings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
) -> GCSStorage:
    return GCSStorage(settings.service_account(), settings.gcs_bucket_name, client)


def get_gateway(
    settings: Settings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
) -> MercadoPagoClient:
    return MercadoPagoClient(settings.require_gateway_token(), client, settings.mp_api_base)


def get_optional_gateway(
    settings: Settings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
) -> Optional[MercadoPagoClient]:
    if not settings.mp_access_token:
        return None
    return MercadoPagoClient(settings.mp_access_token, client, settings.mp_api_base)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limited(scope: str, capacity: int = 10, per_seconds: int = 60):
    async def _check(request: Request, redis: Redis = Depends(get_redis)) -> None:
        decision = await take_token(
            redis, key=f"{scope}:{client_ip(request)}", capacity=capacity, refill_per_sec=capacity / per_seconds,
        )
        if not decision.allowed:
            raise RateLimitedError(
                "Muitas tentativas. Aguarde um minuto e tente novamente.", retry_after=decision.retry_after,
            )
    return _check
