import hashlib

import pytest
from PIL import Image

from fotofacil.errors import ValidationError, WatermarkError, WatermarkUnavailableError
from fotofacil.models import WATERMARK_ASSET_ID, WatermarkAsset
from fotofacil.storage import NO_CACHE, PRIVATE_CACHE, PUBLIC_CACHE
from fotofacil.uploads import IncomingFile, UploadPipeline, build_stem, replace_watermark_asset
from fotofacil.watermark import WATERMARK_PATH
from tests.helpers import make_jpeg, make_mark_png, make_oversized_png, open_image, seed_watermark

pytestmark = pytest.mark.asyncio


@pytest.fixture
def pipeline(db, storage, settings):
    return UploadPipeline(db, storage, settings)


@pytest.fixture
def lenient_pipeline(db, storage, settings):
    return UploadPipeline(db, storage, settings.model_copy(update={"watermark_required": False}))


def _stem(path: str) -> str:
    return path.rsplit("/", 1)[1].rsplit(".", 1)[0]


async def test_build_stem_is_sanitized_and_unique():
    stem, ext = build_stem("Formatura Turma #3.JPG", timestamp_ms=1700000000000, unique_id="deadbeef")
    assert stem == "1700000000000-deadbeef-Formatura_Turma__3"
    assert ext == "JPG"
    assert build_stem("noext")[1] == "jpg"
    assert build_stem("a.jpg")[0] != build_stem("a.jpg")[0]
    assert build_stem("a./x/y")[1] == "xy"
    assert build_stem("a./..")[1] == "jpg"


async def test_image_upload_stores_original_and_watermarked_preview(db, cloud, pipeline):
    seed_watermark(db, cloud)
    original = make_jpeg(1000, 1000)

    result = await pipeline.upload(original, "IMG 001.JPG", "image/jpeg", "fotofacil", event_id="ev1")

    assert result.success and result.watermark_applied
    assert result.original_path.startswith("originals/fotofacil/ev1/")
    assert result.original_path.endswith("-IMG_001.JPG")
    assert result.watermarked_path.startswith("watermarked/fotofacil/ev1/")
    assert result.watermarked_path.endswith(".jpg")
    assert _stem(result.original_path) == _stem(result.watermarked_path)
    assert result.original_url == f"https://storage.googleapis.com/test-bucket/{result.original_path}"
    assert result.size == len(original)

    stored_original = cloud.objects[result.original_path]
    assert stored_original.data == original
    assert stored_original.cache_control == PRIVATE_CACHE

    preview = cloud.objects[result.watermarked_path]
    assert preview.content_type == "image/jpeg"
    assert preview.cache_control == PUBLIC_CACHE
    assert preview.data != original
    assert open_image(preview.data).size == (1000, 1000)


async def test_portfolio_paths_ignore_event_id(db, cloud, pipeline):
    seed_watermark(db, cloud)
    result = await pipeline.upload(make_jpeg(200, 200), "a.jpg", "image/jpeg", "portfolio", event_id="ev1")
    assert result.original_path.startswith("originals/portfolio/")
    assert "ev1" not in result.original_path


async def test_missing_watermark_fails_closed_without_writing(cloud, pipeline):
    with pytest.raises(WatermarkUnavailableError):
        await pipeline.upload(make_jpeg(500, 500), "a.jpg", "image/jpeg", "fotofacil", event_id="ev1")
    assert cloud.objects == {}


async def test_watermark_record_without_object_fails_closed(db, cloud, pipeline):
    seed_watermark(db, cloud)
    del cloud.objects[WATERMARK_PATH]
    with pytest.raises(WatermarkUnavailableError):
        await pipeline.upload(make_jpeg(500, 500), "a.jpg", "image/jpeg", "fotofacil")
    assert cloud.objects == {}


async def test_undecodable_image_fails_closed(db, cloud, pipeline):
    seed_watermark(db, cloud)
    with pytest.raises(WatermarkError):
        await pipeline.upload(b"\x00not-an-image", "a.jpg", "image/jpeg", "fotofacil")
    assert list(cloud.objects) == [WATERMARK_PATH]


async def test_unprotected_fallback_when_watermark_not_required(cloud, lenient_pipeline):
    original = make_jpeg(500, 500)
    result = await lenient_pipeline.upload(original, "a.png", "image/jpeg", "fotofacil", event_id="ev1")

    assert result.success and not result.watermark_applied
    assert result.watermarked_path.endswith(".png")
    assert cloud.objects[result.watermarked_path].data == original


async def test_video_is_copied_unmodified(cloud, pipeline):
    clip = b"\x00\x00\x00\x18ftypmp42" + b"\x01" * 64
    result = await pipeline.upload(clip, "clip.mp4", "video/mp4", "portfolio")

    assert not result.watermark_applied
    assert result.watermarked_path.startswith("watermarked/portfolio/")
    assert result.watermarked_path.endswith(".mp4")
    assert cloud.objects[result.watermarked_path].data == clip
    assert cloud.objects[result.original_path].data == clip


async def test_skipping_watermark_keeps_image_private(cloud, pipeline):
    original = make_jpeg(300, 300)
    result = await pipeline.upload(original, "a.jpg", "image/jpeg", "fotofacil", event_id="ev1", generate_watermark=False)

    assert result.success and not result.watermark_applied
    assert result.watermarked_path is None and result.watermarked_url is None
    assert list(cloud.objects) == [result.original_path]
    assert cloud.objects[result.original_path].cache_control == PRIVATE_CACHE
    assert not any(p.startswith("watermarked/") for p in cloud.objects)


@pytest.mark.parametrize("collection, content_type", [
    ("events", "image/jpeg"),
    ("fotofacil", "application/pdf"),
])
async def test_rejects_bad_requests(pipeline, collection, content_type):
    with pytest.raises(ValidationError):
        await pipeline.upload(b"data", "a.jpg", content_type, collection)


async def test_batch_reports_each_file(db, cloud, pipeline):
    seed_watermark(db, cloud)
    files = [
        IncomingFile("one.jpg", "image/jpeg", make_jpeg(300, 300)),
        IncomingFile("notes.txt", "text/plain", b"hello"),
        IncomingFile("two.jpg", "image/jpeg", make_jpeg(300, 200)),
    ]
    results = await pipeline.upload_batch(files, "fotofacil", event_id="ev9")

    assert [r.success for r in results] == [True, False, True]
    assert results[1].source_name == "notes.txt"
    assert "Unsupported content type" in results[1].error
    assert all(r.watermark_applied for r in results if r.success)


async def test_batch_survives_oversized_image(db, cloud, pipeline, monkeypatch):
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1_000_000)
    seed_watermark(db, cloud)
    files = [
        IncomingFile("huge.png", "image/png", make_oversized_png()),
        IncomingFile("ok.jpg", "image/jpeg", make_jpeg(300, 300)),
    ]
    results = await pipeline.upload_batch(files, "fotofacil", event_id="ev1")

    assert [r.success for r in results] == [False, True]
    assert results[0].source_name == "huge.png"
    assert not any("huge" in p for p in cloud.objects)


async def test_batch_survives_storage_failure(db, cloud, pipeline):
    seed_watermark(db, cloud)
    cloud.failing_prefixes.add("originals/fotofacil/bad/")
    results = await pipeline.upload_batch(
        [IncomingFile("a.jpg", "image/jpeg", make_jpeg(200, 200))], "fotofacil", event_id="bad",
    )
    assert results[0].success is False
    assert results[0].error.startswith("GCS upload failed")


async def test_replace_watermark_asset_bumps_version(db, cloud, storage):
    first = make_mark_png(120, 120)
    asset = await replace_watermark_asset(db, storage, first, "image/png")
    assert asset.version == 1
    assert asset.sha256 == hashlib.sha256(first).hexdigest()
    assert cloud.objects[WATERMARK_PATH].cache_control == NO_CACHE

    second = make_mark_png(240, 240, color=(0, 0, 0, 200))
    asset = await replace_watermark_asset(db, storage, second, "image/png")
    assert asset.version == 2
    assert cloud.objects[WATERMARK_PATH].data == second

    db.expire_all()
    row = db.get(WatermarkAsset, WATERMARK_ASSET_ID)
    assert row.version == 2 and row.size_bytes == len(second)


async def test_replace_watermark_rejects_garbage(db, cloud, storage):
    with pytest.raises(WatermarkError):
        await replace_watermark_asset(db, storage, b"<svg/>", "image/svg+xml")
    assert WATERMARK_PATH not in cloud.objects
