"""Delivery gate: (order id, token) -> signed download URLs for paid originals.

Checks short-circuit in a fixed order so the client can tell the customer
exactly what went wrong:

1. unknown order            -> 404 NOT_FOUND
2. token mismatch           -> 403 INVALID_LINK
3. order not paid           -> 403 PAYMENT_NOT_CONFIRMED
4. delivery window elapsed  -> 403 LINK_EXPIRED (customer must contact support)

Downloads always point at the original object, never at the public preview.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from .config import ServiceAccount, Settings
from .errors import FotoFacilError, ForbiddenError, SigningError, ValidationError
from .models import STATUS_PAID, Order, Photo, as_utc, utcnow
from .orders import get_order
from .security import verify_delivery_token
from .signing import SignedUrl, sign_url, unsigned_url
from .storage import object_path_from_url

logger = logging.getLogger(__name__)

EXPIRED_MESSAGE = "Este link expirou. Entre em contato com o suporte para solicitar um novo link."


def resolve_original_path(photo: Photo) -> str:
    if photo.original_path:
        return photo.original_path

    path = photo.watermarked_path or object_path_from_url(photo.preview_url)
    if path and path.startswith("watermarked/"):
        return "originals/" + path[len("watermarked/"):]
    # anything else could be the public copy itself
    raise FotoFacilError("Erro ao carregar fotos", "ORIGINAL_UNRESOLVED")


def check_access(order: Order, token: str, now: datetime) -> None:
    if not verify_delivery_token(token, order.delivery_token):
        logger.warning("Invalid delivery token for order %s", order.id)
        raise ForbiddenError("Link inválido", "INVALID_LINK")

    if order.status != STATUS_PAID:
        logger.warning("Order %s not paid: %s", order.id, order.status)
        raise ForbiddenError("Pagamento não confirmado", "PAYMENT_NOT_CONFIRMED")

    expires = as_utc(order.delivery_expires_at)
    if expires is None or now > expires:
        logger.warning("Delivery link expired for order %s", order.id)
        raise ForbiddenError(EXPIRED_MESSAGE, "LINK_EXPIRED")


class DeliveryGate:
    def __init__(self, db: Session, account: ServiceAccount, settings: Settings):
        self.db = db
        self.account = account
        self.settings = settings

    def _download_url(self, object_path: str, now: datetime) -> SignedUrl:
        try:
            return sign_url(
                self.account, self.settings.gcs_bucket_name, object_path,
                self.settings.download_url_minutes, now=now,
            )
        except SigningError:
            if not self.settings.allow_unsigned_fallback:
                raise
            logger.warning("Signing failed for %s, serving UNSIGNED url (ALLOW_UNSIGNED_FALLBACK)", object_path)
            return unsigned_url(self.settings.gcs_bucket_name, object_path, now=now)

    def validate(self, order_id: Optional[str], token: Optional[str], now: Optional[datetime] = None) -> dict:
        if not order_id or not token:
            raise ValidationError("Link inválido", "INVALID_LINK")

        now = now or utcnow()
        logger.info("Validating delivery access: %s", order_id)

        order = get_order(self.db, order_id)
        check_access(order, token, now)

        items = []
        for item in order.items:
            photo = item.photo
            original = resolve_original_path(photo)
            signed = self._download_url(original, now)
            items.append({
                "id": item.id,
                "title_snapshot": item.title_snapshot,
                "photo_id": item.photo_id,
                "preview_url": photo.preview_url,
                "object_path": signed.object_path,
                "download_url": signed.url,
                "download_expires_at": signed.expires_at.isoformat(),
            })

        res = self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.delivered_at.is_(None))
            .values(delivered_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if res.rowcount:
            logger.info("Order %s delivered for the first time", order.id)
        order = get_order(self.db, order.id)

        delivered = as_utc(order.delivered_at)
        return {
            "ok": True,
            "order": {
                "id": order.id,
                "status": order.status,
                "delivery_expires_at": as_utc(order.delivery_expires_at).isoformat(),
                "delivered_at": delivered.isoformat() if delivered else None,
            },
            "items": items,
        }
