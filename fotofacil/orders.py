"""Order lifecycle and payment confirmation.

Status only moves on what the payment gateway reports (webhook or explicit
poll), never on anything the client claims. Every status write is a
compare-and-swap on ``(status, version)`` so concurrent webhook deliveries
cannot interleave.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import Settings
from .errors import ConcurrentUpdateError, NotFoundError, ValidationError
from .models import (
    STATUS_CREATED,
    STATUS_FAILED,
    STATUS_PAID,
    STATUS_PENDING,
    Customer,
    Order,
    OrderItem,
    Photo,
    as_utc,
    utcnow,
)
from .payments import GatewayPayment, MercadoPagoClient, order_id_from_reference
from .security import generate_delivery_token, hash_cpf, normalize_cpf

logger = logging.getLogger(__name__)

_ALLOWED = {
    STATUS_CREATED: {STATUS_PENDING, STATUS_PAID, STATUS_FAILED},
    STATUS_PENDING: {STATUS_PENDING, STATUS_PAID, STATUS_FAILED},
    # a repeated approval re-issues the delivery token
    STATUS_PAID: {STATUS_PAID},
    STATUS_FAILED: set(),
}

CAS_ATTEMPTS = 3


@dataclass
class TransitionResult:
    order: Order
    changed: bool
    token_issued: bool = False


def delivery_url(settings: Settings, order_id: str, token: str) -> str:
    return f"{settings.public_site_url.rstrip('/')}/fotofacil/entrega/{order_id}/{token}"


def get_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id, populate_existing=True) if order_id else None
    if order is None:
        raise NotFoundError("Pedido não encontrado")
    return order


def can_transition(current: str, new: str) -> bool:
    return new in _ALLOWED.get(current, set())


def transition_order(
    db: Session,
    order_id: str,
    new_status: str,
    payment_id: Optional[str] = None,
    now: Optional[datetime] = None,
    delivery_ttl_hours: int = 24,
) -> TransitionResult:
    for attempt in range(CAS_ATTEMPTS):
        order = get_order(db, order_id)
        now_ = now or utcnow()

        if not can_transition(order.status, new_status):
            logger.warning("Ignoring transition %s -> %s for order %s", order.status, new_status, order.id)
            return TransitionResult(order, changed=False)

        same_payment = payment_id is None or payment_id == order.mercadopago_payment_id
        if new_status == order.status and new_status != STATUS_PAID and same_payment:
            return TransitionResult(order, changed=False)

        values = {"status": new_status, "version": order.version + 1, "updated_at": now_}
        if payment_id:
            values["mercadopago_payment_id"] = payment_id
        if new_status == STATUS_PAID:
            values["delivery_token"] = generate_delivery_token()
            values["delivery_expires_at"] = now_ + timedelta(hours=delivery_ttl_hours)

        res = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == order.status, Order.version == order.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            prior = order.status
            db.commit()
            order = get_order(db, order_id)
            logger.info("Order %s: %s -> %s (v%d)", order.id, prior, new_status, order.version)
            return TransitionResult(order, changed=True, token_issued=new_status == STATUS_PAID)

        db.rollback()
        logger.warning("Order %s changed underneath us (attempt %d), re-reading", order_id, attempt + 1)

    raise ConcurrentUpdateError("Pedido atualizado concorrentemente, tente novamente")


def apply_gateway_payment(db: Session, settings: Settings, order_id: str,
                          payment: GatewayPayment, now: Optional[datetime] = None) -> TransitionResult:
    result = transition_order(
        db, order_id, payment.order_status,
        payment_id=payment.id, now=now, delivery_ttl_hours=settings.delivery_ttl_hours,
    )
    if result.token_issued:
        # stands in for the customer e-mail
        logger.info("Payment approved! Delivery URL: %s", delivery_url(settings, order_id, result.order.delivery_token))
    return result


# -------------------------
# Checkout
# -------------------------
def _validate_customer(customer: dict) -> tuple[str, str, str]:
    name = (customer.get("name") or "").strip()
    email = (customer.get("email") or "").strip().lower()
    cpf = customer.get("cpf") or ""
    if not name or not email or not cpf:
        raise ValidationError("Dados do cliente incompletos", "INCOMPLETE_CUSTOMER")
    return name, email, cpf


def resolve_line_items(db: Session, photo_ids: list[str]) -> list[dict]:
    """Snapshot title and price from the live catalog; the client's prices are ignored."""
    seen = []
    for pid in photo_ids:
        if pid and pid not in seen:
            seen.append(pid)

    lines = []
    for pid in seen:
        photo = db.get(Photo, pid)
        if photo is None or not photo.is_active or (photo.event is not None and not photo.event.is_active):
            raise ValidationError("Foto indisponível", "PHOTO_UNAVAILABLE")
        price = photo.price_cents if photo.price_cents is not None else photo.event.default_price_cents
        lines.append({"photo_id": photo.id, "title": photo.title or "Foto", "price_cents": int(price or 0)})
    return lines


def find_or_create_customer(db: Session, name: str, email: str, cpf_hash: str) -> Customer:
    existing = db.execute(select(Customer).where(Customer.cpf_hash == cpf_hash)).scalar_one_or_none()
    if existing:
        return existing

    customer = Customer(name=name, email=email, cpf_hash=cpf_hash)
    db.add(customer)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent checkout created the same customer first
        db.rollback()
        return db.execute(select(Customer).where(Customer.cpf_hash == cpf_hash)).scalar_one()
    return customer


def order_response(order: Order) -> dict:
    return {
        "ok": True,
        "order_id": order.id,
        "status": order.status,
        "total_cents": order.total_cents,
        "mercadopago_id": order.mercadopago_payment_id,
        "qr_code": order.qr_code or "",
        "qr_code_base64": order.qr_code_base64 or "",
        "pix_copia_cola": order.qr_code or "",
        "expires_at": order.payment_expires_at,
    }


async def _start_payment(db: Session, gateway: MercadoPagoClient, settings: Settings,
                         order: Order, name: str, email: str, cpf_digits: str) -> Order:
    lines = [
        {"photo_id": i.photo_id, "title": i.title_snapshot, "price_cents": i.price_cents_snapshot}
        for i in order.items
    ]
    payment = await gateway.create_pix_payment(
        order.id, order.total_cents, name, email, cpf_digits, lines, settings.webhook_url,
    )

    order.qr_code = payment.qr_code
    order.qr_code_base64 = payment.qr_code_base64
    order.payment_expires_at = payment.date_of_expiration
    db.commit()

    return apply_gateway_payment(db, settings, order.id, payment).order


async def create_order(
    db: Session,
    gateway: MercadoPagoClient,
    settings: Settings,
    customer: dict,
    items: list[dict],
    idempotency_key: Optional[str] = None,
) -> dict:
    name, email, cpf = _validate_customer(customer or {})
    if not items:
        raise ValidationError("Nenhum item no pedido", "EMPTY_CART")
    cpf_digits = normalize_cpf(cpf)

    logger.info("Received order request: customer=%s cpf=*** items=%d", email, len(items))

    if idempotency_key:
        existing = db.execute(select(Order).where(Order.idempotency_key == idempotency_key)).scalar_one_or_none()
        if existing is not None:
            logger.info("Idempotent replay for order %s", existing.id)
            if existing.mercadopago_payment_id is None and existing.status == STATUS_CREATED:
                existing = await _start_payment(db, gateway, settings, existing, name, email, cpf_digits)
            return order_response(existing)

    lines = resolve_line_items(db, [i.get("photo_id") for i in items])
    total = sum(line["price_cents"] for line in lines)
    if total <= 0:
        raise ValidationError("Valor do pedido inválido", "INVALID_TOTAL")

    cust = find_or_create_customer(db, name, email, hash_cpf(cpf_digits, settings.cpf_hash_salt))

    order = Order(
        customer_id=cust.id,
        total_cents=total,
        currency="BRL",
        status=STATUS_CREATED,
        idempotency_key=idempotency_key,
    )
    order.items = [
        OrderItem(photo_id=line["photo_id"], title_snapshot=line["title"], price_cents_snapshot=line["price_cents"])
        for line in lines
    ]
    db.add(order)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.execute(select(Order).where(Order.idempotency_key == idempotency_key)).scalar_one_or_none()
        if existing is None:
            raise
        return order_response(existing)

    logger.info("Order created: %s total=%d", order.id, total)
    order = await _start_payment(db, gateway, settings, order, name, email, cpf_digits)
    return order_response(order)


# -------------------------
# Gateway confirmation
# -------------------------
async def handle_payment_notification(db: Session, gateway: MercadoPagoClient,
                                      settings: Settings, body: dict) -> dict:
    kind = body.get("type")
    data = body.get("data")
    if kind != "payment" or not isinstance(data, dict) or not data.get("id"):
        return {"ok": True, "message": "Ignored"}

    payment_id = str(data["id"])
    logger.info("Processing payment notification: %s action=%s", payment_id, body.get("action"))
    payment = await gateway.get_payment(payment_id)

    order_id = order_id_from_reference(payment.external_reference)
    if order_id is None:
        logger.info("Not a fotofacil payment, ignoring: %s", payment.external_reference)
        return {"ok": True, "message": "Ignored - not fotofacil"}

    try:
        result = apply_gateway_payment(db, settings, order_id, payment)
    except NotFoundError:
        logger.warning("Payment %s references unknown order %s", payment_id, order_id)
        return {"ok": True, "message": "Ignored - unknown order"}

    return {"ok": True, "order_id": order_id, "status": result.order.status}


async def check_payment(db: Session, gateway: Optional[MercadoPagoClient],
                        settings: Settings, order_id: str) -> dict:
    order = get_order(db, order_id)

    if order.status != STATUS_PAID and order.mercadopago_payment_id and gateway is not None:
        payment = await gateway.get_payment(order.mercadopago_payment_id)
        logger.info("MP payment status for order %s: %s", order.id, payment.status)
        order = apply_gateway_payment(db, settings, order.id, payment).order

    resp = {"status": order.status}
    if order.status == STATUS_PAID:
        resp["deliveryToken"] = order.delivery_token
    return resp


# -------------------------
# Lookup
# -------------------------
def lookup_orders(db: Session, settings: Settings, lookup_type: Optional[str],
                  value: Optional[str], now: Optional[datetime] = None) -> list[dict]:
    if not lookup_type or not value:
        raise ValidationError("Tipo e valor são obrigatórios")

    if lookup_type == "cpf":
        q = select(Customer.id).where(Customer.cpf_hash == hash_cpf(value, settings.cpf_hash_salt))
    elif lookup_type == "email":
        q = select(Customer.id).where(Customer.email == value.strip().lower())
    else:
        raise ValidationError('Tipo inválido. Use "cpf" ou "email"', "INVALID_LOOKUP_TYPE")

    customer_ids = db.execute(q).scalars().all()
    if not customer_ids:
        return []

    orders = db.execute(
        select(Order).where(Order.customer_id.in_(customer_ids)).order_by(Order.created_at.desc())
    ).scalars().all()

    counts = dict(db.execute(
        select(OrderItem.order_id, func.count(OrderItem.id))
        .where(OrderItem.order_id.in_([o.id for o in orders]))
        .group_by(OrderItem.order_id)
    ).all())

    now = now or utcnow()
    out = []
    for o in orders:
        expires = as_utc(o.delivery_expires_at)
        live = o.status == STATUS_PAID and o.delivery_token and expires is not None and now <= expires
        out.append({
            "id": o.id,
            "status": o.status,
            "total_cents": o.total_cents,
            "created_at": str(o.created_at),
            "delivery_expires_at": expires.isoformat() if expires else None,
            "items_count": counts.get(o.id, 0),
            "delivery_url": delivery_url(settings, o.id, o.delivery_token) if live else None,
        })
    logger.info("Found %d orders", len(out))
    return out
