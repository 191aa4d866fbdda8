"""Payment reconciliation loop.

Polls the gateway for orders still waiting on a confirmation and pushes the
reported status through the same state machine the webhook uses. This is the
operator's re-trigger for webhooks the gateway never delivered.
"""

import argparse
import asyncio
import logging
from datetime import timedelta

import httpx
from sqlalchemy import select

from .config import get_settings
from .db import Base, SessionLocal, engine
from .errors import FotoFacilError
from .models import STATUS_CREATED, STATUS_PENDING, Order, utcnow
from .orders import apply_gateway_payment
from .payments import MercadoPagoClient

logger = logging.getLogger(__name__)

LOOKBACK_HOURS = 48


def pending_order_ids(db, lookback_hours: int = LOOKBACK_HOURS) -> list[tuple[str, str]]:
    since = utcnow() - timedelta(hours=lookback_hours)
    rows = db.execute(
        select(Order.id, Order.mercadopago_payment_id)
        .where(
            Order.status.in_([STATUS_CREATED, STATUS_PENDING]),
            Order.mercadopago_payment_id.is_not(None),
            Order.created_at >= since,
        )
        .order_by(Order.created_at)
    ).all()
    return [(order_id, payment_id) for order_id, payment_id in rows]


async def process_one(db, gateway: MercadoPagoClient, order_id: str, payment_id: str) -> str:
    payment = await gateway.get_payment(payment_id)
    result = apply_gateway_payment(db, get_settings(), order_id, payment)
    if result.changed:
        logger.info("[worker] reconciled order_id=%s status=%s", order_id, result.order.status)
    return result.order.status


async def run_once(gateway: MercadoPagoClient) -> int:
    db = SessionLocal()
    try:
        work = pending_order_ids(db)
        for order_id, payment_id in work:
            try:
                await process_one(db, gateway, order_id, payment_id)
            except FotoFacilError as e:
                # one bad order must not stall the rest of the sweep
                logger.error("[worker] order_id=%s failed: %s", order_id, e)
        return len(work)
    finally:
        db.close()


async def main(once: bool = False):
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    Base.metadata.create_all(bind=engine)

    async with httpx.AsyncClient() as client:
        gateway = MercadoPagoClient(settings.require_gateway_token(), client, settings.mp_api_base)
        while True:
            n = await run_once(gateway)
            logger.info("[worker] sweep checked %d orders", n)
            if once:
                return
            await asyncio.sleep(settings.reconcile_interval_seconds)


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--once", action="store_true")
    args = parser.parse_args()
    asyncio.run(main(once=args.once))
