"""V4 signed URLs for private storage objects.

The URL authorizes a single unauthenticated GET of one object until
``issued_at + expiration_minutes``. Expiry itself is enforced by the storage
backend; this module only guarantees that ``X-Goog-Date`` and ``X-Goog-Expires``
describe exactly that window.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import quote

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from .config import ServiceAccount
from .errors import SigningError, ValidationError

logger = logging.getLogger(__name__)

ALGORITHM = "GOOG4-RSA-SHA256"
MAX_EXPIRATION_MINUTES = 7 * 24 * 60


@dataclass(frozen=True)
class SignedUrl:
    url: str
    object_path: str
    issued_at: datetime
    expires_at: datetime
    expires_in: int
    signed: bool = True


def _encode(value: str, safe: str = "") -> str:
    return quote(value, safe=safe + "~")


def canonical_query(params: dict) -> str:
    return "&".join(f"{_encode(k)}={_encode(str(v))}" for k, v in sorted(params.items()))


def sign_url(
    account: ServiceAccount,
    bucket: str,
    object_path: str,
    expiration_minutes: int = 60,
    now: Optional[datetime] = None,
) -> SignedUrl:
    if not object_path:
        raise ValidationError("objectPath is required")
    if expiration_minutes < 1 or expiration_minutes > MAX_EXPIRATION_MINUTES:
        raise ValidationError(f"expirationMinutes must be between 1 and {MAX_EXPIRATION_MINUTES}")

    issued_at = (now or datetime.now(timezone.utc)).replace(microsecond=0)
    expires_in = expiration_minutes * 60

    host = f"{bucket}.storage.googleapis.com"
    canonical_uri = "/" + _encode(object_path.lstrip("/"), safe="/")
    timestamp = issued_at.strftime("%Y%m%dT%H%M%SZ")
    scope = f"{timestamp[:8]}/auto/storage/goog4_request"

    query = canonical_query({
        "X-Goog-Algorithm": ALGORITHM,
        "X-Goog-Credential": f"{account.client_email}/{scope}",
        "X-Goog-Date": timestamp,
        "X-Goog-Expires": str(expires_in),
        "X-Goog-SignedHeaders": "host",
    })

    canonical_request = "\n".join([
        "GET",
        canonical_uri,
        query,
        f"host:{host}",
        "",
        "host",
        "UNSIGNED-PAYLOAD",
    ])
    string_to_sign = "\n".join([
        ALGORITHM,
        timestamp,
        scope,
        hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
    ])

    signature = _rsa_sign(account.private_key, string_to_sign.encode("utf-8"))

    return SignedUrl(
        url=f"https://{host}{canonical_uri}?{query}&X-Goog-Signature={signature.hex()}",
        object_path=object_path,
        issued_at=issued_at,
        expires_at=issued_at + timedelta(seconds=expires_in),
        expires_in=expires_in,
    )


def _rsa_sign(private_key_pem: str, payload: bytes) -> bytes:
    try:
        key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
        return key.sign(payload, padding.PKCS1v15(), hashes.SHA256())
    except (ValueError, TypeError, AttributeError) as e:
        logger.error("Signing failed: %s", e)
        raise SigningError("Failed to generate signed URL")


def unsigned_url(bucket: str, object_path: str, now: Optional[datetime] = None) -> SignedUrl:
    """Plain public URL. Only used when ALLOW_UNSIGNED_FALLBACK is switched on."""
    issued_at = now or datetime.now(timezone.utc)
    return SignedUrl(
        url=f"https://storage.googleapis.com/{bucket}/{_encode(object_path, safe='/')}",
        object_path=object_path,
        issued_at=issued_at,
        expires_at=issued_at,
        expires_in=0,
        signed=False,
    )
