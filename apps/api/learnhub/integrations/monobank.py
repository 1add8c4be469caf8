# apps/api/learnhub/integrations/monobank.py
"""
Monobank Acquiring Client - LearnHub
Thin async wrapper over the merchant invoice API (httpx).
Only the calls the payment lifecycle needs: create / status / cancel / refund,
plus HMAC verification of inbound webhooks.
No retry loop here: failures surface as GatewayError and the caller decides.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Optional

import httpx

from learnhub.core.config import settings
from learnhub.core.enums import Currency, GatewayStatus
from learnhub.core.exceptions import GatewayError

logger = logging.getLogger(__name__)

# ISO 4217 numeric codes expected in `ccy`
CURRENCY_CODES: Dict[Currency, int] = {
    Currency.UAH: 980,
    Currency.USD: 840,
    Currency.EUR: 978,
}


@dataclass
class Invoice:
    invoice_id: str
    payment_url: str


@dataclass
class InvoiceStatus:
    invoice_id: str
    status: GatewayStatus
    amount: Optional[int] = None
    approval_code: Optional[str] = None
    rrn: Optional[str] = None
    failure_reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    ok: bool
    transaction_id: Optional[str] = None


def canonical_payload(data: Dict[str, Any]) -> bytes:
    """Body-signature form: every field except `signature`, sorted keys, compact."""
    unsigned = {k: v for k, v in data.items() if k != "signature"}
    return json.dumps(unsigned, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class MonobankClient:
    def __init__(
        self,
        token: str,
        webhook_secret: str,
        base_url: str = "https://api.monobank.ua/api",
        webhook_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._token = token
        self._webhook_secret = webhook_secret.encode("utf-8")
        self._transport = transport

    # ────────────────────────────────────────────────
    # HTTP plumbing
    # ────────────────────────────────────────────────
    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"X-Token": self._token, "Content-Type": "application/json"},
            ) as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()

            if not response.content:
                return {}
            return response.json()

        except httpx.HTTPStatusError as e:
            body = e.response.text
            logger.error(f"Monobank API error: {e.response.status_code} - {body}")
            try:
                description = e.response.json().get("errDescription") or e.response.json().get("errorDescription")
            except ValueError:
                description = None
            raise GatewayError(description or "Payment gateway rejected the request") from e
        except httpx.HTTPError as e:
            logger.error(f"Monobank API unreachable: {e!r}")
            raise GatewayError("Payment gateway unavailable") from e

    # ────────────────────────────────────────────────
    # Invoices
    # ────────────────────────────────────────────────
    async def create_invoice(
        self,
        amount: int,
        currency: Currency,
        description: str,
        redirect_url: Optional[str] = None,
        reference: Optional[str] = None,
        validity_seconds: int = 900,
    ) -> Invoice:
        payload: Dict[str, Any] = {
            "amount": amount,
            "ccy": CURRENCY_CODES[Currency(currency)],
            "merchantPaymInfo": {
                "reference": reference,
                "destination": description,
            },
            "redirectUrl": redirect_url,
            "webHookUrl": self.webhook_url,
            "validity": validity_seconds,
            "paymentType": "debit",
        }
        payload = {k: v for k, v in payload.items() if v is not None}

        data = await self._request("POST", "/merchant/invoice/create", json=payload)

        try:
            invoice = Invoice(invoice_id=data["invoiceId"], payment_url=data["pageUrl"])
        except KeyError as e:
            logger.error(f"Malformed invoice response: {data}")
            raise GatewayError("Payment gateway returned an incomplete invoice") from e

        logger.info(f"Invoice created: {invoice.invoice_id} (reference={reference})")
        return invoice

    async def get_invoice_status(self, invoice_id: str) -> InvoiceStatus:
        data = await self._request("GET", "/merchant/invoice/status", params={"invoiceId": invoice_id})

        try:
            status = GatewayStatus(data.get("status"))
        except ValueError as e:
            raise GatewayError(f"Unknown invoice status: {data.get('status')!r}") from e

        return InvoiceStatus(
            invoice_id=data.get("invoiceId", invoice_id),
            status=status,
            amount=data.get("finalAmount", data.get("amount")),
            approval_code=data.get("approvalCode"),
            rrn=data.get("rrn"),
            failure_reason=data.get("failureReason"),
            raw=data,
        )

    async def cancel_invoice(self, invoice_id: str) -> bool:
        await self._request("POST", "/merchant/invoice/remove", json={"invoiceId": invoice_id})
        logger.info(f"Invoice {invoice_id} invalidated")
        return True

    async def refund(self, invoice_id: str, amount: int, comment: Optional[str] = None) -> RefundResult:
        payload: Dict[str, Any] = {"invoiceId": invoice_id, "amount": amount}
        if comment:
            payload["comment"] = comment

        data = await self._request("POST", "/merchant/invoice/cancel", json=payload)

        status = data.get("status")
        ok = status in (None, "processing", "success")
        logger.info(f"Refund requested for {invoice_id}: amount={amount} status={status}")
        return RefundResult(ok=ok, transaction_id=data.get("cancelRef") or data.get("rrn"))

    # ────────────────────────────────────────────────
    # Webhook signatures
    # ────────────────────────────────────────────────
    def sign(self, payload: bytes) -> str:
        return hmac.new(self._webhook_secret, payload, hashlib.sha256).hexdigest()

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(self.sign(payload), signature.strip().lower())


@lru_cache(maxsize=1)
def get_gateway() -> MonobankClient:
    """FastAPI dependency / task helper: process-wide client built from settings."""
    return MonobankClient(
        token=settings.MONOBANK_TOKEN.get_secret_value(),
        webhook_secret=settings.MONOBANK_WEBHOOK_SECRET.get_secret_value(),
        base_url=settings.MONOBANK_BASE_URL,
        webhook_url=settings.MONOBANK_WEBHOOK_URL,
        timeout=settings.MONOBANK_TIMEOUT_SECONDS,
    )
