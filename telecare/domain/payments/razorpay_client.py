"""Razorpay API client - order creation and refunds over httpx"""

import logging
from typing import Optional

import httpx

from ...config import RAZORPAY_API_BASE, RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET
from ...errors import GatewayError

logger = logging.getLogger(__name__)


class RazorpayClient:
    """Thin async wrapper over the Razorpay REST API (amounts in paise)"""

    def __init__(
        self,
        key_id: str = RAZORPAY_KEY_ID,
        key_secret: str = RAZORPAY_KEY_SECRET,
        base_url: str = RAZORPAY_API_BASE,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client

        if not key_id or not key_secret:
            logger.warning("RAZORPAY_KEY_ID/RAZORPAY_KEY_SECRET not set; Razorpay calls will fail until configured")

    def is_available(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def _post(self, path: str, payload: dict) -> dict:
        if not self.is_available():
            raise GatewayError("Razorpay is not configured")

        url = f"{self.base_url}{path}"
        try:
            if self.http_client is not None:
                response = await self.http_client.post(url, json=payload, auth=(self.key_id, self.key_secret))
            else:
                async with httpx.AsyncClient(timeout=30.0) as http_client:
                    response = await http_client.post(url, json=payload, auth=(self.key_id, self.key_secret))
        except httpx.HTTPError as e:
            logger.error(f"❌ Razorpay request to {path} failed: {e}")
            raise GatewayError("Could not reach Razorpay") from e

        if response.status_code not in [200, 201]:
            logger.error(f"❌ Razorpay {path} returned {response.status_code}: {response.text}")
            raise GatewayError(
                "Razorpay rejected the request", gateway_status=response.status_code
            )
        return response.json()

    async def create_order(
        self, amount_subunits: int, currency: str, receipt: str, notes: Optional[dict] = None
    ) -> dict:
        order = await self._post(
            "/orders",
            {"amount": amount_subunits, "currency": currency, "receipt": receipt, "notes": notes or {}},
        )
        logger.info(f"💳 Razorpay order {order.get('id')} created for {amount_subunits} {currency} subunits")
        return order

    async def refund(self, payment_id: str, amount_subunits: int, notes: Optional[dict] = None) -> dict:
        refund = await self._post(
            f"/payments/{payment_id}/refund",
            {"amount": amount_subunits, "speed": "normal", "notes": notes or {}},
        )
        logger.info(f"💸 Razorpay refund {refund.get('id')} issued for payment {payment_id}")
        return refund
