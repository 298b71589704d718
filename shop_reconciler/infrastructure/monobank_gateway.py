import base64
import binascii
import logging
from time import monotonic

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from pydantic import BaseModel

from shop_reconciler.core.errors import PspUnavailableError
from shop_reconciler.infrastructure.structured_log import log_event

logger = logging.getLogger(__name__)

PUBLIC_KEY_TTL_SECONDS = 300


class InvoiceResult(BaseModel):
    invoice_id: str
    page_url: str | None


class CancelResult(BaseModel):
    status: str


def load_monobank_public_key(value: str | bytes) -> ec.EllipticCurvePublicKey:
    """Monobank hands the key out as base64 of a PEM document; plain PEM is accepted too."""
    raw = value.encode("ascii") if isinstance(value, str) else value
    raw = raw.strip()
    if not raw.startswith(b"-----BEGIN"):
        raw = base64.b64decode(raw)
    key = serialization.load_pem_public_key(raw)
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise ValueError("Monobank public key must be an EC key")
    return key


class MonobankGateway:
    def __init__(
        self,
        token: str | None,
        public_key: str | None,
        api_base_url: str = "https://api.monobank.ua",
        timeout_seconds: float = 10,
        transport: httpx.AsyncBaseTransport | None = None,
        public_key_ttl_seconds: float = PUBLIC_KEY_TTL_SECONDS,
    ):
        self._token = token or None
        self._configured_key = load_monobank_public_key(public_key) if public_key else None
        self._api_base_url = api_base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._transport = transport
        self._public_key_ttl = public_key_ttl_seconds
        self._cached_key: ec.EllipticCurvePublicKey | None = None
        self._cached_key_expires_at = 0.0

    @property
    def configured(self) -> bool:
        return self._token is not None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._api_base_url,
            timeout=self._timeout,
            headers={"X-Token": self._token or ""},
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        if not self._token:
            raise PspUnavailableError("Monobank is not configured")
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            log_event(
                logger,
                logging.ERROR,
                "monobank_request_failed",
                path=path,
                error=str(e),
            )
            raise PspUnavailableError(f"Monobank request to {path} failed") from e

    async def get_public_key(self, force_refresh: bool = False) -> ec.EllipticCurvePublicKey:
        if self._configured_key is not None:
            return self._configured_key
        if (
            self._cached_key is None
            or force_refresh
            or monotonic() >= self._cached_key_expires_at
        ):
            self._cached_key = await self._fetch_public_key()
            self._cached_key_expires_at = monotonic() + self._public_key_ttl
        return self._cached_key

    async def _fetch_public_key(self) -> ec.EllipticCurvePublicKey:
        body = await self._request("GET", "/api/merchant/pubkey")
        raw_key = body.get("key") if isinstance(body, dict) else None
        if not raw_key or not isinstance(raw_key, str):
            log_event(logger, logging.ERROR, "monobank_pubkey_missing")
            raise PspUnavailableError("Monobank returned no public key")
        try:
            return load_monobank_public_key(raw_key)
        except (ValueError, TypeError, binascii.Error) as e:
            log_event(logger, logging.ERROR, "monobank_pubkey_invalid", error=str(e))
            raise PspUnavailableError("Monobank returned an invalid public key") from e

    async def verify_webhook_signature(self, body: bytes, x_sign: str) -> bool:
        """Check the ECDSA/SHA-256 ``X-Sign`` header over the raw body.

        A failed check against a fetched key refreshes the key once, since
        Monobank rotates it without notice.
        """
        try:
            signature = base64.b64decode(x_sign, validate=True)
        except (binascii.Error, ValueError):
            return False

        key = await self.get_public_key()
        if self._verify(key, signature, body):
            return True
        if self._configured_key is not None:
            return False

        refreshed = await self.get_public_key(force_refresh=True)
        return self._verify(refreshed, signature, body)

    @staticmethod
    def _verify(key: ec.EllipticCurvePublicKey, signature: bytes, body: bytes) -> bool:
        try:
            key.verify(signature, body, ec.ECDSA(hashes.SHA256()))
        except InvalidSignature:
            return False
        return True

    async def create_invoice(
        self,
        *,
        amount_minor: int,
        ccy: int,
        reference: str,
        destination: str,
        redirect_url: str | None = None,
        webhook_url: str | None = None,
    ) -> InvoiceResult:
        payload = {
            "amount": amount_minor,
            "ccy": ccy,
            "merchantPaymInfo": {"reference": reference, "destination": destination},
        }
        if redirect_url:
            payload["redirectUrl"] = redirect_url
        if webhook_url:
            payload["webHookUrl"] = webhook_url

        body = await self._request("POST", "/api/merchant/invoice/create", json=payload)
        return InvoiceResult(invoice_id=body["invoiceId"], page_url=body.get("pageUrl"))

    async def cancel_invoice(
        self, *, invoice_id: str, ext_ref: str, amount_minor: int
    ) -> CancelResult:
        body = await self._request(
            "POST",
            "/api/merchant/invoice/cancel",
            json={"invoiceId": invoice_id, "extRef": ext_ref, "amount": amount_minor},
        )
        return CancelResult(status=str(body.get("status", "processing")).lower())

    async def remove_invoice(self, *, invoice_id: str) -> dict:
        """Invalidate an unpaid invoice so it can no longer be paid."""
        return await self._request(
            "POST", "/api/merchant/invoice/remove", json={"invoiceId": invoice_id}
        )
