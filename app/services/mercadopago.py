from __future__ import annotations

import os
import httpx
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict
from urllib.parse import quote

from app.core.errors import GatewayError

MP_API_BASE_URL = (os.getenv("MP_API_BASE_URL", "https://api.mercadopago.com") or "").strip()
MP_TIMEOUT_S = float(os.getenv("MP_TIMEOUT_S", "15"))


@dataclass(frozen=True)
class VerifiedPayment:
    id: str
    status: str
    amount: Decimal | None
    external_reference: str | None
    approved_at: datetime | None


def _parse_amount(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise GatewayError(f"Mercado Pago returned an invalid amount: {value!r}", retryable=False)


def _parse_dt(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class MercadoPagoClient:
    """
    Reads the authoritative state of a payment from Mercado Pago.

    Only GET /v1/payments/{id} is used; notification bodies are never trusted.
    Errors:
      - network error / timeout / 429 / 5xx -> GatewayError(retryable=True)
      - any other non-2xx                   -> GatewayError(retryable=False)
    """

    def __init__(self, access_token: str, base_url: str = MP_API_BASE_URL, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self._transport = transport

    @staticmethod
    def from_env() -> "MercadoPagoClient":
        token = (os.getenv("MP_ACCESS_TOKEN") or "").strip()
        if not token:
            raise RuntimeError("MP_ACCESS_TOKEN is not set")
        return MercadoPagoClient(token)

    async def _get(self, path: str) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.access_token}",
        }

        try:
            async with httpx.AsyncClient(timeout=MP_TIMEOUT_S, transport=self._transport) as client:
                resp = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise GatewayError(f"Mercado Pago unreachable: {type(e).__name__}: {str(e)}", retryable=True)

        if resp.status_code == 429 or resp.status_code >= 500:
            raise GatewayError(
                f"Mercado Pago error {resp.status_code}: {resp.text}",
                retryable=True,
                status_code=resp.status_code,
            )
        if resp.status_code < 200 or resp.status_code >= 300:
            raise GatewayError(
                f"Mercado Pago error {resp.status_code}: {resp.text}",
                retryable=False,
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError:
            raise GatewayError("Mercado Pago returned a non-JSON body", retryable=True, status_code=resp.status_code)

        if not isinstance(data, dict):
            raise GatewayError("Mercado Pago returned an unexpected payload", retryable=True, status_code=resp.status_code)
        return data

    async def get_payment(self, payment_id: str) -> VerifiedPayment:
        requested = str(payment_id).strip()
        data = await self._get(f"/v1/payments/{quote(requested, safe='')}")

        # The response must describe the payment that was asked for.
        returned = data.get("id")
        if returned is None or str(returned).strip() != requested:
            raise GatewayError(
                f"Mercado Pago returned payment id {returned!r} for {requested!r}",
                retryable=False,
            )

        ext_ref = data.get("external_reference")

        return VerifiedPayment(
            id=requested,
            status=str(data.get("status") or "").lower(),
            amount=_parse_amount(data.get("transaction_amount")),
            external_reference=(str(ext_ref).strip() or None) if ext_ref is not None else None,
            approved_at=_parse_dt(data.get("date_approved")),
        )
