import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from .errors import GatewayError
from .models import STATUS_FAILED, STATUS_PAID, STATUS_PENDING

logger = logging.getLogger(__name__)

EXTERNAL_REF_PREFIX = "fotofacil_"

_STATUS_MAP = {
    "approved": STATUS_PAID,
    "rejected": STATUS_FAILED,
    "cancelled": STATUS_FAILED,
}


def map_gateway_status(status: Optional[str]) -> str:
    return _STATUS_MAP.get(status or "", STATUS_PENDING)


def external_reference(order_id: str) -> str:
    return f"{EXTERNAL_REF_PREFIX}{order_id}"


def order_id_from_reference(ref: Optional[str]) -> Optional[str]:
    if not ref or not ref.startswith(EXTERNAL_REF_PREFIX):
        return None
    return ref[len(EXTERNAL_REF_PREFIX):] or None


@dataclass
class GatewayPayment:
    id: str
    status: str
    external_reference: Optional[str] = None
    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None
    date_of_expiration: Optional[str] = None
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: dict) -> "GatewayPayment":
        tx = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        return cls(
            id=str(data.get("id")),
            status=data.get("status") or "",
            external_reference=data.get("external_reference"),
            qr_code=tx.get("qr_code"),
            qr_code_base64=tx.get("qr_code_base64"),
            date_of_expiration=data.get("date_of_expiration"),
            raw=data,
        )

    @property
    def order_status(self) -> str:
        return map_gateway_status(self.status)


class MercadoPagoClient:
    def __init__(self, access_token: str, client: httpx.AsyncClient,
                 api_base: str = "https://api.mercadopago.com"):
        self.access_token = access_token
        self.client = client
        self.api_base = api_base.rstrip("/")

    def _headers(self, extra: Optional[dict] = None) -> dict:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        if extra:
            headers.update(extra)
        return headers

    async def create_pix_payment(
        self,
        order_id: str,
        total_cents: int,
        payer_name: str,
        payer_email: str,
        cpf_digits: str,
        items: list[dict],
        notification_url: Optional[str] = None,
    ) -> GatewayPayment:
        names = payer_name.split()
        first = names[0] if names else payer_name
        last = " ".join(names[1:]) or first

        payload = {
            "transaction_amount": total_cents / 100,
            "description": f"Pedido FotoFácil - {len(items)} foto(s)",
            "payment_method_id": "pix",
            "payer": {
                "email": payer_email,
                "first_name": first,
                "last_name": last,
                "identification": {"type": "CPF", "number": cpf_digits},
            },
            "external_reference": external_reference(order_id),
            "additional_info": {
                "items": [
                    {
                        "id": f"photo-{item['photo_id']}",
                        "title": item.get("title") or f"Foto {idx + 1}",
                        "description": "Foto em alta resolução",
                        "category_id": "photos",
                        "quantity": 1,
                        "unit_price": item["price_cents"] / 100,
                    }
                    for idx, item in enumerate(items)
                ],
            },
        }
        if notification_url:
            payload["notification_url"] = notification_url

        logger.info("Creating Mercado Pago payment for order %s", order_id)
        try:
            r = await self.client.post(
                f"{self.api_base}/v1/payments",
                json=payload,
                headers=self._headers({"X-Idempotency-Key": order_id}),
            )
        except httpx.HTTPError as e:
            raise GatewayError(f"Erro ao processar pagamento: {e}")

        data = _json(r)
        if r.status_code >= 400:
            logger.error("Mercado Pago error: %s %s", r.status_code, data)
            raise GatewayError(f"Erro ao processar pagamento: {data.get('message') or 'Erro desconhecido'}")

        payment = GatewayPayment.from_api(data)
        logger.info("Mercado Pago payment created: %s status=%s", payment.id, payment.status)
        return payment

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        try:
            r = await self.client.get(f"{self.api_base}/v1/payments/{payment_id}", headers=self._headers())
        except httpx.HTTPError as e:
            raise GatewayError(f"Error fetching payment: {e}")

        if r.status_code >= 400:
            logger.error("Error fetching payment %s from MP: %s %s", payment_id, r.status_code, r.text[:300])
            raise GatewayError("Error fetching payment")
        return GatewayPayment.from_api(_json(r))


def _json(r: httpx.Response) -> dict:
    try:
        data = r.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
