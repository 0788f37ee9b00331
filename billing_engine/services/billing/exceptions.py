"""Typed domain errors raised by the billing services.

Expected outcomes (already applied, not applicable) are returned as result
models instead; these exceptions cover invariant violations only.
"""
from __future__ import annotations


class BillingError(Exception):
    code = "billing_error"
    status_code = 400

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class SubscriptionNotFoundError(BillingError):
    code = "subscription_not_found"
    status_code = 404


class PlanNotFoundError(BillingError):
    code = "plan_not_found"
    status_code = 404


class PriceNotFoundError(BillingError):
    code = "price_not_found"
    status_code = 404


class PaymentNotFoundError(BillingError):
    code = "payment_not_found"
    status_code = 404


class InvoiceNotFoundError(BillingError):
    code = "invoice_not_found"
    status_code = 404


class CheckoutSessionNotFoundError(BillingError):
    code = "checkout_session_not_found"
    status_code = 404


class ProviderMismatchError(BillingError):
    code = "provider_mismatch"
    status_code = 409


class InvoiceAlreadyVoidError(BillingError):
    code = "invoice_already_void"
    status_code = 409


class PaymentNotRefundableError(BillingError):
    code = "payment_not_refundable"
    status_code = 409


class UnsupportedCurrencyError(BillingError):
    code = "unsupported_currency"
    status_code = 422


class UnknownProviderError(BillingError):
    code = "unknown_provider"
    status_code = 404


class ProviderNotConfiguredError(BillingError):
    code = "provider_not_configured"
    status_code = 503


class ProviderStartError(BillingError):
    code = "provider_unavailable"
    status_code = 502


class InvalidSignature(BillingError):
    code = "invalid_signature"
    status_code = 400


class InvalidPayload(BillingError):
    code = "invalid_payload"
    status_code = 400


class CourseCheckoutError(BillingError):
    """Carries one of the named course checkout reasons."""

    code = "course_checkout_failed"
    status_code = 409

    def __init__(self, reason) -> None:
        super().__init__(str(getattr(reason, "value", reason)))
        self.reason = reason
