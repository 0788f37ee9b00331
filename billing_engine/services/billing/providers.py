"""Payment gateway adapters: Zarinpal, IDPay and NextPay.

Each adapter starts a checkout over HTTP and turns an inbound webhook body
into a ``NormalizedWebhook``. Webhook signatures are the hex HMAC-SHA256 of
the raw body keyed by the provider's shared secret.
"""

import hashlib
import hmac
import json
import logging
import math
from typing import Any

import httpx

from billing_engine.config import Settings, settings
from billing_engine.models.billing import PaymentStatus
from billing_engine.schemas.billing import (
    NormalizedWebhook,
    StartCheckoutRequest,
    StartCheckoutResult,
)
from billing_engine.services.billing.exceptions import (
    InvalidPayload,
    InvalidSignature,
    ProviderStartError,
    UnknownProviderError,
)

logger = logging.getLogger(__name__)

SESSION_ID_KEYS = ("sessionId", "session_id", "order_id", "orderId")
FALLBACK_REF_KEYS = ("providerRef", "ref_id", "refId", "track_id", "order_id")
AMOUNT_KEYS = ("amount", "Amount", "price", "Price")
CURRENCY_KEYS = ("currency", "Currency", "curr", "Curr")
EVENT_TYPE_KEYS = ("event", "event_type", "eventType", "type")


def _lookup(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]
    lowered = key.lower()
    for candidate, value in payload.items():
        if isinstance(candidate, str) and candidate.lower() == lowered:
            return value
    return None


def pick_string(payload: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    """First non-blank string (or integral number) under any of ``keys``."""
    for key in keys:
        value = _lookup(payload, key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def pick_number(payload: dict[str, Any], keys: tuple[str, ...]) -> float | None:
    for key in keys:
        value = _lookup(payload, key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)) and math.isfinite(value):
            return value
        if isinstance(value, str) and value.strip():
            try:
                parsed = float(value.strip())
            except ValueError:
                continue
            if math.isfinite(parsed):
                return parsed
    return None


def _normalize_status_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


class ProviderAdapter:
    """Common webhook verification and normalization."""

    name = ""
    external_id_keys: tuple[str, ...] = ()

    def __init__(self, config: Settings | None = None) -> None:
        self._settings = config or settings

    # ── Configuration ────────────────────────────────────

    def webhook_secret(self) -> str:
        return self._settings.webhook_secret_for(self.name)

    def is_configured(self) -> bool:
        return bool(self.webhook_secret())

    def can_start(self) -> bool:
        return False

    # ── Webhooks ─────────────────────────────────────────

    def sign(self, raw_body: bytes) -> str:
        secret = self.webhook_secret()
        return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()

    def verify(self, raw_body: bytes, signature: str | None) -> dict[str, Any]:
        """Check the signature and return the decoded payload."""
        if not self.is_configured():
            raise InvalidSignature(f"No webhook secret configured for {self.name}")
        if not signature:
            raise InvalidSignature("Missing signature")
        expected = self.sign(raw_body)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise InvalidSignature("Signature mismatch")
        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise InvalidPayload("Webhook body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise InvalidPayload("Webhook body must be a JSON object")
        return payload

    def extract_external_id(self, payload: dict[str, Any]) -> str:
        external_id = pick_string(payload, self.external_id_keys)
        if external_id:
            return external_id
        session_id = pick_string(payload, ("sessionId", "session_id"))
        provider_ref = pick_string(payload, FALLBACK_REF_KEYS)
        if session_id and provider_ref:
            return f"{session_id}:{provider_ref}"
        raise InvalidPayload("Missing external id")

    def map_status(self, payload: dict[str, Any]) -> PaymentStatus:
        raise NotImplementedError

    def normalize(self, payload: dict[str, Any]) -> NormalizedWebhook:
        amount = pick_number(payload, AMOUNT_KEYS)
        return NormalizedWebhook(
            external_id=self.extract_external_id(payload),
            session_id=pick_string(payload, SESSION_ID_KEYS),
            provider_transaction_id=pick_string(payload, self.external_id_keys),
            outcome_status=self.map_status(payload),
            amount=int(amount) if amount is not None and amount > 0 else None,
            currency=pick_string(payload, CURRENCY_KEYS),
            event_type=pick_string(payload, EVENT_TYPE_KEYS),
        )

    # ── Checkout start ───────────────────────────────────

    def start(self, request: StartCheckoutRequest) -> StartCheckoutResult:
        raise NotImplementedError

    def _post(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            with httpx.Client(
                timeout=self._settings.provider_start_timeout_seconds
            ) as client:
                resp = client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning(
                "%s start request failed: %s", self.name, exc, extra={"provider": self.name}
            )
            raise ProviderStartError(f"{self.name} is unreachable") from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderStartError(f"{self.name} returned a non-JSON response") from exc
        if resp.status_code >= 400 or not isinstance(data, dict):
            logger.error(
                "%s start rejected (%s): %s",
                self.name,
                resp.status_code,
                data,
                extra={"provider": self.name},
            )
            raise ProviderStartError(f"{self.name} rejected the checkout")
        return data


class ZarinpalAdapter(ProviderAdapter):
    name = "zarinpal"
    external_id_keys = ("authority", "Authority", "externalId")

    def _host(self) -> str:
        if self._settings.billing_provider_sandbox:
            return "https://sandbox.zarinpal.com"
        return "https://payment.zarinpal.com"

    def can_start(self) -> bool:
        return bool(self._settings.zarinpal_merchant_id)

    def map_status(self, payload: dict[str, Any]) -> PaymentStatus:
        raw = _normalize_status_text(pick_string(payload, ("status", "Status", "code")))
        if raw in {"ok", "paid", "100"}:
            return PaymentStatus.PAID
        if raw in {"pending", "0"}:
            return PaymentStatus.PENDING
        if raw in {"refunded", "refund", "200"}:
            return PaymentStatus.REFUNDED
        return PaymentStatus.FAILED

    def start(self, request: StartCheckoutRequest) -> StartCheckoutResult:
        if not self.can_start():
            raise ProviderStartError("Zarinpal merchant id is not configured")
        data = self._post(
            f"{self._host()}/pg/v4/payment/request.json",
            {
                "merchant_id": self._settings.zarinpal_merchant_id,
                "amount": request.amount,
                "callback_url": request.return_url,
                "description": request.description or f"Checkout {request.session_id}",
                "metadata": {"order_id": str(request.session_id)},
            },
        )
        body = data.get("data") or {}
        authority = body.get("authority") if isinstance(body, dict) else None
        if not authority:
            raise ProviderStartError("Zarinpal did not return an authority")
        return StartCheckoutResult(
            redirect_url=f"{self._host()}/pg/StartPay/{authority}",
            provider_ref=authority,
            raw=data,
        )


class IdpayAdapter(ProviderAdapter):
    name = "idpay"
    external_id_keys = ("id", "ID", "payment_id")
    base_url = "https://api.idpay.ir/v1.1"

    def can_start(self) -> bool:
        return bool(self._settings.idpay_api_key)

    def map_status(self, payload: dict[str, Any]) -> PaymentStatus:
        numeric = pick_number(payload, ("status", "Status", "state"))
        if numeric is not None:
            if numeric >= 200:
                return PaymentStatus.REFUNDED
            if numeric >= 100:
                return PaymentStatus.PAID
            if numeric >= 0:
                return PaymentStatus.PENDING
            return PaymentStatus.FAILED
        raw = _normalize_status_text(pick_string(payload, ("status", "state")))
        if raw in {"paid", "ok"}:
            return PaymentStatus.PAID
        if raw in {"refunded", "refund"}:
            return PaymentStatus.REFUNDED
        if raw == "pending":
            return PaymentStatus.PENDING
        return PaymentStatus.FAILED

    def start(self, request: StartCheckoutRequest) -> StartCheckoutResult:
        if not self.can_start():
            raise ProviderStartError("IDPay API key is not configured")
        headers = {
            "X-API-KEY": self._settings.idpay_api_key,
            "Content-Type": "application/json",
        }
        if self._settings.billing_provider_sandbox:
            headers["X-SANDBOX"] = "1"
        data = self._post(
            f"{self.base_url}/payment",
            {
                "order_id": str(request.session_id),
                "amount": request.amount,
                "callback": request.return_url,
                "desc": request.description,
            },
            headers=headers,
        )
        if not data.get("id") or not data.get("link"):
            raise ProviderStartError("IDPay did not return a payment link")
        return StartCheckoutResult(
            redirect_url=data["link"], provider_ref=str(data["id"]), raw=data
        )


class NextpayAdapter(ProviderAdapter):
    name = "nextpay"
    external_id_keys = ("trans_id", "transaction_id", "transId", "externalId")
    base_url = "https://nextpay.org/nx/gateway"

    def can_start(self) -> bool:
        return bool(self._settings.nextpay_api_key)

    def map_status(self, payload: dict[str, Any]) -> PaymentStatus:
        code = pick_number(payload, ("code", "status", "result"))
        if code is not None:
            if code == 0:
                return PaymentStatus.PAID
            if code == 20:
                return PaymentStatus.REFUNDED
            if code > 0:
                return PaymentStatus.PENDING
            return PaymentStatus.FAILED
        raw = _normalize_status_text(pick_string(payload, ("status", "result", "state")))
        if raw in {"paid", "ok"}:
            return PaymentStatus.PAID
        if raw in {"refunded", "refund"}:
            return PaymentStatus.REFUNDED
        if raw == "pending":
            return PaymentStatus.PENDING
        return PaymentStatus.FAILED

    def start(self, request: StartCheckoutRequest) -> StartCheckoutResult:
        if not self.can_start():
            raise ProviderStartError("NextPay API key is not configured")
        data = self._post(
            f"{self.base_url}/token",
            {
                "api_key": self._settings.nextpay_api_key,
                "order_id": str(request.session_id),
                "amount": request.amount,
                "callback_uri": request.return_url,
            },
        )
        trans_id = data.get("trans_id")
        if data.get("code") != -1 or not trans_id:
            raise ProviderStartError("NextPay did not issue a transaction token")
        return StartCheckoutResult(
            redirect_url=f"{self.base_url}/payment/{trans_id}",
            provider_ref=str(trans_id),
            raw=data,
        )


ADAPTERS: dict[str, type[ProviderAdapter]] = {
    ZarinpalAdapter.name: ZarinpalAdapter,
    IdpayAdapter.name: IdpayAdapter,
    NextpayAdapter.name: NextpayAdapter,
}


def is_provider_name(value: Any) -> bool:
    return isinstance(value, str) and value in ADAPTERS


def get_adapter(name: str, config: Settings | None = None) -> ProviderAdapter:
    adapter_cls = ADAPTERS.get(name)
    if adapter_cls is None:
        raise UnknownProviderError(f"Unknown payment provider: {name}")
    return adapter_cls(config)
