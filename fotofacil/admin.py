import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .db import get_db
from .deps import get_storage
from .errors import NotFoundError, ValidationError
from .models import WATERMARK_ASSET_ID, Event, Photo, WatermarkAsset
from .signing import sign_url
from .storage import GCSStorage
from .uploads import IncomingFile, UploadPipeline, replace_watermark_asset

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def _want_watermark(raw: Optional[str]) -> bool:
    return (raw or "true").strip().lower() != "false"


async def _incoming(files: list[UploadFile]) -> list[IncomingFile]:
    return [
        IncomingFile(filename=f.filename or "file", content_type=f.content_type or "", data=await f.read())
        for f in files
    ]


# -------------------------
# Events
# -------------------------
class CreateEventReq(BaseModel):
    name: str
    default_price_cents: int


@router.post("/events")
def create_event(req: CreateEventReq, db: Session = Depends(get_db)):
    if req.default_price_cents < 0:
        raise ValidationError("default_price_cents must be >= 0")

    event = Event(name=req.name, default_price_cents=req.default_price_cents)
    db.add(event)
    db.commit()
    return {
        "ok": True,
        "event_id": event.id,
        "name": event.name,
        "default_price_cents": event.default_price_cents,
    }


@router.get("/events")
def list_events(db: Session = Depends(get_db)):
    rows = db.execute(select(Event).order_by(Event.created_at.desc())).scalars().all()
    return [
        {
            "event_id": e.id,
            "name": e.name,
            "default_price_cents": e.default_price_cents,
            "is_active": e.is_active,
            "created_at": str(e.created_at),
        }
        for e in rows
    ]


# -------------------------
# Uploads
# -------------------------
@router.post("/uploads")
async def upload_file(
    file: UploadFile = File(...),
    type: str = Form(...),
    eventId: Optional[str] = Form(None),
    fileName: Optional[str] = Form(None),
    generateWatermark: Optional[str] = Form("true"),
    db: Session = Depends(get_db),
    storage: GCSStorage = Depends(get_storage),
    cfg: Settings = Depends(get_settings),
):
    pipeline = UploadPipeline(db, storage, cfg)
    result = await pipeline.upload(
        await file.read(), file.filename or "file", file.content_type or "", type,
        event_id=eventId, file_name=fileName, generate_watermark=_want_watermark(generateWatermark),
    )
    return result.as_dict()


@router.post("/uploads/batch")
async def upload_batch(
    files: list[UploadFile] = File(...),
    type: str = Form(...),
    eventId: Optional[str] = Form(None),
    generateWatermark: Optional[str] = Form("true"),
    db: Session = Depends(get_db),
    storage: GCSStorage = Depends(get_storage),
    cfg: Settings = Depends(get_settings),
):
    pipeline = UploadPipeline(db, storage, cfg)
    results = await pipeline.upload_batch(
        await _incoming(files), type, event_id=eventId, generate_watermark=_want_watermark(generateWatermark),
    )
    return {"results": [r.as_dict() for r in results]}


# -------------------------
# Photos
# -------------------------
@router.post("/events/{event_id}/photos")
async def add_event_photos(
    event_id: str,
    files: list[UploadFile] = File(...),
    db: Session = Depends(get_db),
    storage: GCSStorage = Depends(get_storage),
    cfg: Settings = Depends(get_settings),
):
    if db.get(Event, event_id) is None:
        raise NotFoundError("Evento não encontrado")

    pipeline = UploadPipeline(db, storage, cfg)
    results = await pipeline.upload_batch(await _incoming(files), "fotofacil", event_id=event_id)

    max_order = db.execute(
        select(func.max(Photo.display_order)).where(Photo.event_id == event_id)
    ).scalar() or 0

    out = []
    for r in results:
        entry = r.as_dict()
        if r.success:
            max_order += 1
            photo = Photo(
                event_id=event_id,
                title=(r.file_name or "Foto").rsplit(".", 1)[0],
                original_path=r.original_path,
                watermarked_path=r.watermarked_path,
                preview_url=r.watermarked_url,
                display_order=max_order,
                is_active=True,
            )
            db.add(photo)
            db.flush()
            entry["photo_id"] = photo.id
        out.append(entry)
    db.commit()

    ok = sum(1 for r in results if r.success)
    return {"uploaded": ok, "failed": len(results) - ok, "results": out}


class UpdatePhotoReq(BaseModel):
    title: Optional[str] = None
    price_cents: Optional[int] = None
    display_order: Optional[int] = None
    is_active: Optional[bool] = None


@router.patch("/photos/{photo_id}")
def update_photo(photo_id: str, req: UpdatePhotoReq, db: Session = Depends(get_db)):
    photo = db.get(Photo, photo_id)
    if photo is None:
        raise NotFoundError("Foto não encontrada")

    changes = req.model_dump(exclude_unset=True)
    if changes.get("price_cents") is not None and changes["price_cents"] < 0:
        raise ValidationError("price_cents must be >= 0")
    for key in ("title", "display_order", "is_active"):
        if changes.get(key) is None:
            changes.pop(key, None)
    # price_cents may be explicitly nulled to fall back to the event price
    for key, value in changes.items():
        setattr(photo, key, value)
    db.commit()

    return {
        "ok": True,
        "photo_id": photo.id,
        "title": photo.title,
        "price_cents": photo.price_cents,
        "display_order": photo.display_order,
        "is_active": photo.is_active,
    }


# -------------------------
# Watermark asset
# -------------------------
@router.post("/watermark")
async def upload_watermark(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    storage: GCSStorage = Depends(get_storage),
):
    data = await file.read()
    logger.info("Watermark upload request received: %s (%d bytes)", file.filename, len(data))
    asset = await replace_watermark_asset(db, storage, data, file.content_type)
    return {
        "ok": True,
        "watermark_url": storage.public_url(asset.object_path),
        "watermark_path": asset.object_path,
        "version": asset.version,
    }


@router.get("/watermark")
def get_watermark(db: Session = Depends(get_db)):
    asset = db.get(WatermarkAsset, WATERMARK_ASSET_ID)
    if asset is None:
        return {"configured": False}
    return {
        "configured": True,
        "watermark_path": asset.object_path,
        "content_type": asset.content_type,
        "size_bytes": asset.size_bytes,
        "sha256": asset.sha256,
        "version": asset.version,
        "uploaded_at": str(asset.uploaded_at),
    }


# -------------------------
# Objects
# -------------------------
class DeleteObjectsReq(BaseModel):
    object_paths: list[str] = Field(default_factory=list, alias="objectPaths")


@router.post("/objects/delete")
async def delete_objects(req: DeleteObjectsReq, storage: GCSStorage = Depends(get_storage)):
    paths = req.object_paths
    if not paths:
        raise ValidationError("objectPaths array is required")

    logger.info("Deleting %d files from GCS", len(paths))
    token = await storage.access_token()
    results = await asyncio.gather(*[storage.delete(token, p) for p in paths], return_exceptions=True)

    deleted, not_found, failed = [], [], []
    for path, outcome in zip(paths, results):
        if isinstance(outcome, BaseException):
            logger.error("Delete failed for %s: %s", path, outcome)
            failed.append(path)
        elif outcome:
            deleted.append(path)
        else:
            not_found.append(path)

    return {
        "ok": True,
        "deleted": deleted,
        "notFound": not_found,
        "failed": failed,
        "summary": {
            "total": len(paths),
            "deleted": len(deleted),
            "notFound": len(not_found),
            "failed": len(failed),
        },
    }


class SignedUrlReq(BaseModel):
    object_path: str = Field(alias="objectPath")
    expiration_minutes: int = Field(default=60, alias="expirationMinutes")


@router.post("/signed-url")
def create_signed_url(req: SignedUrlReq, cfg: Settings = Depends(get_settings)):
    logger.info("Generating signed URL for: %s, expires in %d minutes", req.object_path, req.expiration_minutes)
    signed = sign_url(cfg.service_account(), cfg.gcs_bucket_name, req.object_path, req.expiration_minutes)
    return {
        "ok": True,
        "signedUrl": signed.url,
        "expiresIn": signed.expires_in,
        "expiresAt": signed.expires_at.isoformat(),
    }
