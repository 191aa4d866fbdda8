import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

# Order lifecycle: created -> pending -> {paid | failed}
STATUS_CREATED = "created"
STATUS_PENDING = "pending"
STATUS_PAID = "paid"
STATUS_FAILED = "failed"
ORDER_STATUSES = (STATUS_CREATED, STATUS_PENDING, STATUS_PAID, STATUS_FAILED)

WATERMARK_ASSET_ID = 1


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Event(Base):
    __tablename__ = "fotofacil_events"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String, index=True)
    default_price_cents: Mapped[int] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Photo(Base):
    __tablename__ = "fotofacil_photos"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    event_id: Mapped[str] = mapped_column(ForeignKey("fotofacil_events.id"), index=True)
    title: Mapped[str] = mapped_column(String, default="Foto")
    original_path: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    watermarked_path: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    preview_url: Mapped[str] = mapped_column(String)
    price_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    event: Mapped[Event] = relationship()


class Customer(Base):
    __tablename__ = "fotofacil_customers"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str] = mapped_column(String, index=True)
    cpf_hash: Mapped[str] = mapped_column(String(64), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Order(Base):
    __tablename__ = "fotofacil_orders"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    customer_id: Mapped[str] = mapped_column(ForeignKey("fotofacil_customers.id"), index=True)
    total_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="BRL")
    status: Mapped[str] = mapped_column(String, default=STATUS_CREATED, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String, unique=True, nullable=True)

    mercadopago_payment_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    qr_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    qr_code_base64: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_expires_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    delivery_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    delivery_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    customer: Mapped[Customer] = relationship()
    items: Mapped[list["OrderItem"]] = relationship(back_populates="order", order_by="OrderItem.id")


class OrderItem(Base):
    __tablename__ = "fotofacil_order_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("fotofacil_orders.id"), index=True)
    photo_id: Mapped[str] = mapped_column(ForeignKey("fotofacil_photos.id"), index=True)
    title_snapshot: Mapped[str] = mapped_column(String)
    price_cents_snapshot: Mapped[int] = mapped_column(Integer)

    order: Mapped[Order] = relationship(back_populates="items")
    photo: Mapped[Photo] = relationship()


class WatermarkAsset(Base):
    """The single global watermark; an upload replaces the whole row."""

    __tablename__ = "watermark_assets"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    object_path: Mapped[str] = mapped_column(String)
    content_type: Mapped[str] = mapped_column(String)
    size_bytes: Mapped[int] = mapped_column(Integer)
    sha256: Mapped[str] = mapped_column(String(64))
    version: Mapped[int] = mapped_column(Integer, default=1)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class SiteSetting(Base):
    __tablename__ = "site_settings"
    setting_key: Mapped[str] = mapped_column(String, primary_key=True)
    setting_value: Mapped[str] = mapped_column(Text, default="")
