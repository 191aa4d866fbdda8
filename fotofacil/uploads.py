"""Upload pipeline: private original plus public protected rendition.

Objects land at::

    originals/{collection}/[{event_id}/]{ts}-{rand}-{name}.{ext}
    watermarked/{collection}/[{event_id}/]{ts}-{rand}-{name}.jpg

Videos keep their own extension on the protected side and are never watermarked.
An image uploaded with watermarking turned off gets no protected object at all.
"""

import asyncio
import hashlib
import logging
import re
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Optional

import httpx
from PIL import Image
from sqlalchemy.orm import Session

from .config import Settings
from .errors import FotoFacilError, ValidationError, WatermarkError, WatermarkUnavailableError
from .models import WATERMARK_ASSET_ID, WatermarkAsset, utcnow
from .storage import NO_CACHE, PRIVATE_CACHE, GCSStorage
from .watermark import PREVIEW_CONTENT_TYPE, WATERMARK_PATH, apply_watermark, load_watermark

logger = logging.getLogger(__name__)

COLLECTIONS = ("fotofacil", "portfolio")

_UNSAFE = re.compile(r"[^a-zA-Z0-9\-_]")
_UNSAFE_EXT = re.compile(r"[^a-zA-Z0-9]")


@dataclass
class IncomingFile:
    filename: str
    content_type: str
    data: bytes


@dataclass
class UploadResult:
    success: bool
    original_url: Optional[str] = None
    watermarked_url: Optional[str] = None
    original_path: Optional[str] = None
    watermarked_path: Optional[str] = None
    file_name: Optional[str] = None
    content_type: Optional[str] = None
    size: Optional[int] = None
    watermark_applied: bool = False
    error: Optional[str] = None
    source_name: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


def split_extension(filename: str) -> tuple[str, str]:
    if "." not in filename:
        return filename, "jpg"
    stem, ext = filename.rsplit(".", 1)
    return stem, (_UNSAFE_EXT.sub("", ext) or "jpg")


def build_stem(filename: str, file_name: Optional[str] = None,
               timestamp_ms: Optional[int] = None, unique_id: Optional[str] = None) -> tuple[str, str]:
    """Collision-resistant ``{ts}-{rand}-{safe name}`` plus the original extension."""
    base, ext = split_extension(filename or "")
    base = file_name or base or "file"
    ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    rid = unique_id or uuid.uuid4().hex[:8]
    return f"{ts}-{rid}-{_UNSAFE.sub('_', base)}", ext


def build_prefix(collection: str, event_id: Optional[str]) -> str:
    if collection == "fotofacil" and event_id:
        return f"fotofacil/{event_id}"
    return collection


def original_path_for(collection: str, event_id: Optional[str], stem: str, ext: str) -> str:
    return f"originals/{build_prefix(collection, event_id)}/{stem}.{ext}"


def protected_path_for(collection: str, event_id: Optional[str], stem: str, ext: str) -> str:
    return f"watermarked/{build_prefix(collection, event_id)}/{stem}.{ext}"


class UploadPipeline:
    def __init__(self, db: Session, storage: GCSStorage, settings: Settings):
        self.db = db
        self.storage = storage
        self.settings = settings

    async def load_mark(self, token: str) -> Optional[Image.Image]:
        asset = self.db.get(WatermarkAsset, WATERMARK_ASSET_ID)
        if asset is None:
            return None
        data = await self.storage.download(token, asset.object_path)
        if not data:
            logger.warning("Watermark record v%s points to a missing object: %s", asset.version, asset.object_path)
            return None
        return load_watermark(data)

    async def _protected_rendition(self, token: str, data: bytes) -> Optional[bytes]:
        """Watermarked JPEG bytes, or None when the policy allows publishing unprotected."""
        try:
            mark = await self.load_mark(token)
            if mark is None:
                raise WatermarkUnavailableError("No watermark asset available")
            return await asyncio.to_thread(apply_watermark, data, mark)
        except WatermarkError as e:
            if self.settings.watermark_required:
                logger.error("Watermarking failed, aborting upload: %s", e)
                raise
            logger.warning("Watermarking failed, publishing UNPROTECTED original at protected path: %s", e)
            return None

    async def upload(
        self,
        data: bytes,
        filename: str,
        content_type: str,
        collection: str,
        event_id: Optional[str] = None,
        file_name: Optional[str] = None,
        generate_watermark: bool = True,
    ) -> UploadResult:
        if collection not in COLLECTIONS:
            raise ValidationError('Invalid type. Must be "fotofacil" or "portfolio"')
        if not data:
            raise ValidationError("No file provided")
        content_type = content_type or "application/octet-stream"
        is_image = content_type.startswith("image/")
        is_video = content_type.startswith("video/")
        if not (is_image or is_video):
            raise ValidationError(f"Unsupported content type: {content_type}")

        logger.info("Processing upload: type=%s, file=%s, generateWatermark=%s", collection, filename, generate_watermark)

        token = await self.storage.access_token()
        stem, ext = build_stem(filename, file_name)

        protected = None
        if is_image and generate_watermark:
            # composite before writing anything so a fail-closed abort leaves no orphan
            protected = await self._protected_rendition(token, data)

        original_path = original_path_for(collection, event_id, stem, ext)
        original_url = await self.storage.upload(token, original_path, data, content_type,
                                                 cache_control=PRIVATE_CACHE)
        logger.info("Original uploaded: %s", original_path)

        if protected is not None:
            protected_path = protected_path_for(collection, event_id, stem, "jpg")
            protected_url = await self.storage.upload(token, protected_path, protected, PREVIEW_CONTENT_TYPE)
            logger.info("Protected rendition uploaded: %s", protected_path)
        elif is_image and not generate_watermark:
            # nothing goes to the public namespace for an image that was not watermarked
            protected_path = protected_url = None
            logger.info("Watermark not requested, original stored privately only: %s", original_path)
        else:
            protected_path = protected_path_for(collection, event_id, stem, ext)
            protected_url = await self.storage.upload(token, protected_path, data, content_type)
            logger.info("Unmodified copy uploaded to protected path: %s", protected_path)

        return UploadResult(
            success=True,
            original_url=original_url,
            watermarked_url=protected_url,
            original_path=original_path,
            watermarked_path=protected_path,
            file_name=f"{stem}.{ext}",
            content_type=content_type,
            size=len(data),
            watermark_applied=protected is not None,
            source_name=filename,
        )

    async def upload_batch(
        self,
        files: list[IncomingFile],
        collection: str,
        event_id: Optional[str] = None,
        generate_watermark: bool = True,
    ) -> list[UploadResult]:
        results = []
        for i, f in enumerate(files):
            try:
                result = await self.upload(
                    f.data, f.filename, f.content_type, collection,
                    event_id=event_id, generate_watermark=generate_watermark,
                )
            except (FotoFacilError, httpx.HTTPError) as e:
                logger.error("Upload failed for %s: %s", f.filename, e)
                message = e.message if isinstance(e, FotoFacilError) else str(e)
                result = UploadResult(success=False, error=message, source_name=f.filename)
            results.append(result)

            if i < len(files) - 1 and self.settings.upload_batch_delay_seconds > 0:
                await asyncio.sleep(self.settings.upload_batch_delay_seconds)

        ok = sum(1 for r in results if r.success)
        logger.info("Batch upload finished: %d ok, %d failed", ok, len(results) - ok)
        return results


async def replace_watermark_asset(db: Session, storage: GCSStorage, data: bytes,
                                  content_type: Optional[str] = None) -> WatermarkAsset:
    """Upload a new reference mark and replace the single config row wholesale."""
    if not data:
        raise ValidationError("Empty file received")
    load_watermark(data)  # reject anything Pillow cannot decode before it goes live

    token = await storage.access_token()
    await storage.upload(token, WATERMARK_PATH, data, content_type or "image/png", cache_control=NO_CACHE)

    asset = db.get(WatermarkAsset, WATERMARK_ASSET_ID)
    version = (asset.version + 1) if asset else 1
    if asset is not None:
        db.delete(asset)
        db.flush()
    asset = WatermarkAsset(
        id=WATERMARK_ASSET_ID,
        object_path=WATERMARK_PATH,
        content_type=content_type or "image/png",
        size_bytes=len(data),
        sha256=hashlib.sha256(data).hexdigest(),
        version=version,
        uploaded_at=utcnow(),
    )
    db.add(asset)
    db.commit()
    logger.info("Watermark replaced: %s v%d (%d bytes)", WATERMARK_PATH, version, len(data))
    return asset
