"""Service-account bearer tokens for the storage API.

A self-signed RS256 JWT assertion is exchanged at the OAuth token endpoint for a
short-lived access token scoped to full control of the bucket.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from jose import jwt
from jose.exceptions import JOSEError

from .config import ServiceAccount
from .errors import ConfigurationError, TokenExchangeError

logger = logging.getLogger(__name__)

OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
STORAGE_SCOPE = "https://www.googleapis.com/auth/devstorage.full_control"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME_SECONDS = 3600


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: datetime


def build_assertion(account: ServiceAccount, now: Optional[datetime] = None) -> str:
    issued = int((now or datetime.now(timezone.utc)).timestamp())
    claims = {
        "iss": account.client_email,
        "scope": STORAGE_SCOPE,
        "aud": OAUTH_TOKEN_URL,
        "iat": issued,
        "exp": issued + ASSERTION_LIFETIME_SECONDS,
    }
    try:
        return jwt.encode(claims, account.private_key, algorithm="RS256")
    except JOSEError as e:
        raise ConfigurationError(f"Invalid GCS private key: {e}")


async def fetch_access_token(
    account: ServiceAccount,
    client: httpx.AsyncClient,
    now: Optional[datetime] = None,
) -> AccessToken:
    now = now or datetime.now(timezone.utc)
    assertion = build_assertion(account, now)

    r = await client.post(
        OAUTH_TOKEN_URL,
        data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    try:
        body = r.json()
    except ValueError:
        body = {}

    token = body.get("access_token") if isinstance(body, dict) else None
    if not token:
        logger.error("Token exchange failed: status=%s body=%s", r.status_code, body or r.text[:200])
        raise TokenExchangeError("Failed to get access token")

    expires_in = int(body.get("expires_in", ASSERTION_LIFETIME_SECONDS))
    return AccessToken(token=token, expires_at=now + timedelta(seconds=expires_in))
