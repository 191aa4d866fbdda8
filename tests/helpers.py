import io
import json
import struct
import zlib
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from urllib.parse import parse_qs

import httpx
from PIL import Image

from fotofacil.models import (
    STATUS_PAID,
    WATERMARK_ASSET_ID,
    Customer,
    Event,
    Order,
    OrderItem,
    Photo,
    WatermarkAsset,
    utcnow,
)
from fotofacil.watermark import WATERMARK_PATH


class FakeRedis:
    """Just enough of redis.asyncio for the rate limiter and idempotency cache."""

    def __init__(self):
        self.values = {}
        self.hashes = {}

    async def get(self, key):
        return self.values.get(key)

    async def setex(self, key, ttl, value):
        self.values[key] = value
        return True

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    async def expire(self, key, seconds):
        return True


@dataclass
class StoredObject:
    data: bytes
    content_type: str
    cache_control: str


class FakeCloud:
    """OAuth token endpoint, storage JSON API and Mercado Pago payments in one MockTransport."""

    def __init__(self, bucket: str = "test-bucket"):
        self.bucket = bucket
        self.objects: dict[str, StoredObject] = {}
        self.payments: dict[str, dict] = {}
        self.payment_requests: list[dict] = []
        self.assertions: list[str] = []
        self.token_body = {"access_token": "ya29.fake-token", "expires_in": 3600}
        self.failing_prefixes: set[str] = set()
        self.deleted: list[str] = []
        self._next_payment = 9000
        self.transport = httpx.MockTransport(self.handle)

    # ---- scripting helpers ----
    def set_status(self, payment_id: str, status: str):
        self.payments[str(payment_id)]["status"] = status

    def add_payment(self, external_reference: str, status: str = "approved") -> str:
        pid = self._new_id()
        self.payments[pid] = {"id": int(pid), "status": status, "external_reference": external_reference}
        return pid

    def _new_id(self) -> str:
        self._next_payment += 1
        return str(self._next_payment)

    # ---- transport ----
    def handle(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host == "oauth2.googleapis.com":
            return self._token(request)
        if host == "storage.googleapis.com":
            return self._storage(request)
        if host == "api.mercadopago.com":
            return self._mercadopago(request)
        return httpx.Response(404, json={"error": "unknown host"})

    def _token(self, request):
        form = parse_qs(request.read().decode())
        self.assertions.append(form.get("assertion", [""])[0])
        return httpx.Response(200, json=self.token_body)

    def _storage(self, request):
        path = request.url.path
        if request.method == "POST" and path == f"/upload/storage/v1/b/{self.bucket}/o":
            name = request.url.params.get("name")
            if any(name.startswith(p) for p in self.failing_prefixes):
                return httpx.Response(503, text="backend unavailable")
            self.objects[name] = StoredObject(
                data=request.read(),
                content_type=request.headers.get("content-type", ""),
                cache_control=request.headers.get("cache-control", ""),
            )
            return httpx.Response(200, json={"name": name, "bucket": self.bucket})

        prefix = f"/storage/v1/b/{self.bucket}/o/"
        if path.startswith(prefix):
            name = path[len(prefix):]
            if name in self.failing_prefixes:
                return httpx.Response(500, text="internal error")
            if request.method == "GET":
                obj = self.objects.get(name)
                if obj is None:
                    return httpx.Response(404, json={"error": {"code": 404}})
                return httpx.Response(200, content=obj.data, headers={"content-type": obj.content_type})
            if request.method == "DELETE":
                if self.objects.pop(name, None) is None:
                    return httpx.Response(404, json={"error": {"code": 404}})
                self.deleted.append(name)
                return httpx.Response(204)
        return httpx.Response(404)

    def _mercadopago(self, request):
        path = request.url.path
        if request.method == "POST" and path == "/v1/payments":
            body = json.loads(request.read())
            body["_idempotency_key"] = request.headers.get("x-idempotency-key")
            self.payment_requests.append(body)
            pid = self._new_id()
            self.payments[pid] = {
                "id": int(pid),
                "status": "pending",
                "external_reference": body.get("external_reference"),
                "transaction_amount": body.get("transaction_amount"),
                "date_of_expiration": "2026-10-20T12:00:00.000-03:00",
                "point_of_interaction": {
                    "transaction_data": {"qr_code": f"00020126PIX{pid}", "qr_code_base64": "iVBORw0KGgo="},
                },
            }
            return httpx.Response(201, json=self.payments[pid])

        if request.method == "GET" and path.startswith("/v1/payments/"):
            payment = self.payments.get(path.rsplit("/", 1)[1])
            if payment is None:
                return httpx.Response(404, json={"message": "Payment not found"})
            return httpx.Response(200, json=payment)
        return httpx.Response(404)


# -------------------------
# Images
# -------------------------
def make_jpeg(width: int, height: int, color=(40, 90, 160)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (width, height), color).save(out, format="JPEG", quality=95)
    return out.getvalue()


def make_mark_png(width: int = 200, height: int = 200, color=(255, 255, 255, 255)) -> bytes:
    out = io.BytesIO()
    Image.new("RGBA", (width, height), color).save(out, format="PNG")
    return out.getvalue()


def make_oversized_png(width: int = 20000, height: int = 20000) -> bytes:
    """A PNG header declaring far more pixels than Pillow will decode."""
    def chunk(kind: bytes, body: bytes) -> bytes:
        return struct.pack(">I", len(body)) + kind + body + struct.pack(">I", zlib.crc32(kind + body) & 0xFFFFFFFF)

    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", header) + chunk(b"IDAT", zlib.compress(b"")) + chunk(b"IEND", b"")


def open_image(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


# -------------------------
# Catalog / orders
# -------------------------
def seed_watermark(db, cloud: FakeCloud, data: Optional[bytes] = None) -> WatermarkAsset:
    data = data or make_mark_png()
    cloud.objects[WATERMARK_PATH] = StoredObject(data, "image/png", "no-cache, max-age=0")
    asset = WatermarkAsset(
        id=WATERMARK_ASSET_ID, object_path=WATERMARK_PATH, content_type="image/png",
        size_bytes=len(data), sha256="0" * 64, version=1,
    )
    db.add(asset)
    db.commit()
    return asset


def seed_event(db, name: str = "Formatura 2024", default_price_cents: int = 1500) -> Event:
    event = Event(name=name, default_price_cents=default_price_cents)
    db.add(event)
    db.commit()
    return event


def seed_photo(db, event: Event, title: str = "Foto 1", price_cents: Optional[int] = None,
               original_path: Optional[str] = "default", is_active: bool = True) -> Photo:
    stem = title.replace(" ", "_")
    if original_path == "default":
        original_path = f"originals/fotofacil/{event.id}/1700000000000-abcd1234-{stem}.jpg"
    photo = Photo(
        event_id=event.id,
        title=title,
        original_path=original_path,
        watermarked_path=f"watermarked/fotofacil/{event.id}/1700000000000-abcd1234-{stem}.jpg",
        preview_url=f"https://storage.googleapis.com/test-bucket/watermarked/fotofacil/{event.id}/1700000000000-abcd1234-{stem}.jpg",
        price_cents=price_cents,
        is_active=is_active,
    )
    db.add(photo)
    db.commit()
    return photo


def seed_order(db, photos: list[Photo], status: str = STATUS_PAID, token: Optional[str] = "t" * 64,
               expires_in: Optional[timedelta] = timedelta(hours=24)) -> Order:
    customer = Customer(name="Maria Silva", email="maria@example.com", cpf_hash="f" * 64)
    db.add(customer)
    db.flush()
    now = utcnow()
    order = Order(
        customer_id=customer.id,
        total_cents=sum(p.price_cents or 1500 for p in photos),
        status=status,
        mercadopago_payment_id="12345",
        delivery_token=token if status == STATUS_PAID else None,
        delivery_expires_at=(now + expires_in) if (status == STATUS_PAID and expires_in is not None) else None,
    )
    order.items = [
        OrderItem(photo_id=p.id, title_snapshot=p.title, price_cents_snapshot=p.price_cents or 1500)
        for p in photos
    ]
    db.add(order)
    db.commit()
    return order


CUSTOMER = {"name": "Maria Silva", "email": "Maria@Example.com", "cpf": "123.456.789-09"}


async def place_order(client: httpx.AsyncClient, photo_ids: list[str], customer: Optional[dict] = None,
                      idempotency_key: Optional[str] = None) -> httpx.Response:
    headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
    return await client.post(
        "/orders",
        json={"customer": customer or CUSTOMER, "items": [{"photo_id": pid} for pid in photo_ids]},
        headers=headers,
    )
