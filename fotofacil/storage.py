import logging
import re
from typing import Optional
from urllib.parse import quote, unquote

import httpx

from .config import ServiceAccount
from .errors import StorageError
from .gcs_auth import fetch_access_token
from .signing import SignedUrl, sign_url

logger = logging.getLogger(__name__)

STORAGE_HOST = "https://storage.googleapis.com"
PUBLIC_CACHE = "public, max-age=31536000"
NO_CACHE = "no-cache, max-age=0"
PRIVATE_CACHE = "private, max-age=0"

_PUBLIC_URL = re.compile(r"^https://storage\.googleapis\.com/[^/]+/(.+)$")
_VHOST_URL = re.compile(r"^https://[^/]+\.storage\.googleapis\.com/([^?]+)")


def object_path_from_url(url: str) -> Optional[str]:
    if not url:
        return None
    m = _PUBLIC_URL.match(url) or _VHOST_URL.match(url)
    return unquote(m.group(1).split("?")[0]) if m else None


class GCSStorage:
    """Thin client over the storage JSON API for one bucket."""

    def __init__(self, account: ServiceAccount, bucket: str, client: httpx.AsyncClient):
        self.account = account
        self.bucket = bucket
        self.client = client

    async def access_token(self) -> str:
        try:
            token = await fetch_access_token(self.account, self.client)
        except httpx.TransportError as e:
            logger.warning("Token exchange transport error, retrying once: %s", e)
            token = await fetch_access_token(self.account, self.client)
        return token.token

    def public_url(self, object_path: str) -> str:
        return f"{STORAGE_HOST}/{self.bucket}/{object_path}"

    def sign(self, object_path: str, expiration_minutes: int = 60) -> SignedUrl:
        return sign_url(self.account, self.bucket, object_path, expiration_minutes)

    async def upload(
        self,
        token: str,
        object_path: str,
        data: bytes,
        content_type: str,
        cache_control: str = PUBLIC_CACHE,
    ) -> str:
        logger.info("Uploading to GCS: %s (%d bytes)", object_path, len(data))
        try:
            r = await self.client.post(
                f"{STORAGE_HOST}/upload/storage/v1/b/{self.bucket}/o",
                params={"uploadType": "media", "name": object_path},
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": content_type,
                    "Cache-Control": cache_control,
                },
                content=data,
            )
        except httpx.HTTPError as e:
            raise StorageError(f"GCS upload failed: {e}")

        if r.status_code >= 400:
            logger.error("GCS upload failed: %s %s", r.status_code, r.text[:500])
            raise StorageError(f"GCS upload failed: {r.text}")

        return self.public_url(object_path)

    async def download(self, token: str, object_path: str) -> Optional[bytes]:
        try:
            r = await self.client.get(
                f"{STORAGE_HOST}/storage/v1/b/{self.bucket}/o/{quote(object_path, safe='')}",
                params={"alt": "media"},
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise StorageError(f"GCS download failed: {e}")

        if r.status_code == 404:
            return None
        if r.status_code >= 400:
            raise StorageError(f"GCS download failed: {r.text}")
        return r.content

    async def delete(self, token: str, object_path: str) -> bool:
        logger.info("Deleting from GCS: %s", object_path)
        try:
            r = await self.client.delete(
                f"{STORAGE_HOST}/storage/v1/b/{self.bucket}/o/{quote(object_path, safe='')}",
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise StorageError(f"GCS delete failed: {e}")

        if r.status_code == 404:
            logger.info("File not found: %s", object_path)
            return False
        if r.status_code >= 400:
            logger.error("GCS delete failed: %s", r.text[:500])
            raise StorageError(f"GCS delete failed: {r.text}")
        return True
