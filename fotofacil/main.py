import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from .admin import router as admin_router
from .config import Settings, get_settings
from .db import Base, engine, get_db
from .delivery import DeliveryGate
from .deps import get_gateway, get_optional_gateway, get_redis, rate_limited
from .errors import FotoFacilError, RateLimitedError
from .idempotency import get_cached_response, set_cached_response
from .orders import check_payment, create_order, handle_payment_notification, lookup_orders
from .payments import MercadoPagoClient
from .site_settings import SiteSettings, load_site_settings

# --- Config / globals ---
settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="FotoFacil Delivery", version="1.0.0")
app.include_router(admin_router)

# Create DB tables (fine to do at import-time for a single-node deploy)
Base.metadata.create_all(bind=engine)


@app.exception_handler(FotoFacilError)
async def fotofacil_error_handler(request: Request, exc: FotoFacilError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitedError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "reason_code": exc.reason_code, "error": exc.message},
        headers=headers,
    )


# -------------------------
# Checkout
# -------------------------
class CustomerIn(BaseModel):
    name: str = ""
    email: str = ""
    cpf: str = ""


class CartItemIn(BaseModel):
    photo_id: str
    # accepted for compatibility with the cart payload, never trusted
    price_cents: Optional[int] = None
    title: Optional[str] = None


class CreateOrderReq(BaseModel):
    customer: CustomerIn = Field(default_factory=CustomerIn)
    items: list[CartItemIn] = []


@app.post("/orders", status_code=201)
async def create_order_endpoint(
    req: CreateOrderReq,
    db: Session = Depends(get_db),
    redis: Redis = Depends(get_redis),
    gateway: MercadoPagoClient = Depends(get_gateway),
    cfg: Settings = Depends(get_settings),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    # Idempotency
    if idempotency_key:
        cached = await get_cached_response(redis, "orders", idempotency_key)
        if cached:
            return cached

    resp = await create_order(
        db, gateway, cfg,
        customer=req.customer.model_dump(),
        items=[i.model_dump() for i in req.items],
        idempotency_key=idempotency_key,
    )
    if idempotency_key:
        await set_cached_response(redis, "orders", idempotency_key, resp)
    return resp


@app.post("/orders/{order_id}/check-payment")
async def check_payment_endpoint(
    order_id: str,
    db: Session = Depends(get_db),
    gateway: Optional[MercadoPagoClient] = Depends(get_optional_gateway),
    cfg: Settings = Depends(get_settings),
):
    return await check_payment(db, gateway, cfg, order_id)


class LookupReq(BaseModel):
    type: Optional[str] = None
    value: Optional[str] = None


@app.post("/orders/lookup", dependencies=[Depends(rate_limited("lookup"))])
def lookup_orders_endpoint(
    req: LookupReq,
    db: Session = Depends(get_db),
    cfg: Settings = Depends(get_settings),
):
    logger.info("Looking up orders by: %s", req.type)
    return {"orders": lookup_orders(db, cfg, req.type, req.value)}


# -------------------------
# Payment gateway notifications
# -------------------------
@app.post("/webhooks/mercadopago")
async def mercadopago_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: MercadoPagoClient = Depends(get_gateway),
    cfg: Settings = Depends(get_settings),
):
    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    # legacy IPN style: ?type=payment&data.id=123
    if not body and request.query_params.get("type"):
        body = {
            "type": request.query_params.get("type"),
            "data": {"id": request.query_params.get("data.id")},
        }

    logger.info("Webhook received: type=%s action=%s", body.get("type"), body.get("action"))
    return await handle_payment_notification(db, gateway, cfg, body)


# -------------------------
# Delivery
# -------------------------
class DeliveryReq(BaseModel):
    order_id: Optional[str] = Field(default=None, alias="orderId")
    token: Optional[str] = None

    model_config = {"populate_by_name": True}


@app.post("/delivery/validate", dependencies=[Depends(rate_limited("delivery"))])
def validate_delivery(
    req: DeliveryReq,
    db: Session = Depends(get_db),
    cfg: Settings = Depends(get_settings),
):
    gate = DeliveryGate(db, cfg.service_account(), cfg)
    return gate.validate(req.order_id, req.token)


@app.get("/settings", response_model=SiteSettings)
def site_settings(db: Session = Depends(get_db)):
    return load_site_settings(db)
