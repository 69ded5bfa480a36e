"""Stripe Checkout gateway.

Webhook bodies are authenticated with ``stripe.Webhook.construct_event``,
but the payment state is never read from the event itself: the Checkout
Session is retrieved again and only its fresh ``status``/``payment_status``
is trusted. The SDK is synchronous, so every network call runs in a worker
thread.
"""

import asyncio
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe

from lms_payments.config import StripeConfig
from lms_payments.gateways.base import (
    PayableIntent,
    RawCallback,
    VerificationRejected,
    VerificationResult,
    Verified,
    to_minor_units,
)
from lms_payments.models.payment import Payment, PaymentMethod, PaymentStatus
from lms_payments.services.errors import GatewayError, TransientGatewayError

logger = logging.getLogger(__name__)

SESSION_EVENT_PREFIX = "checkout.session."
ASYNC_FAILED_EVENT = "checkout.session.async_payment_failed"
QR_PAYMENT_METHODS = ("wechat_pay", "alipay")


def _session_outcome(session: Dict[str, Any], event_type: Optional[str]) -> Optional[PaymentStatus]:
    status = session.get("status")
    payment_status = session.get("payment_status")
    if payment_status in ("paid", "no_payment_required"):
        return PaymentStatus.COMPLETED
    if status == "expired":
        return PaymentStatus.CANCELLED
    if status == "complete":
        # Completed checkout still waiting on a delayed method (bank debit etc.)
        if event_type == ASYNC_FAILED_EVENT:
            return PaymentStatus.FAILED
        return PaymentStatus.PROCESSING
    return None


def _claimed_order_code(body: bytes) -> Optional[str]:
    try:
        event = json.loads(body)
        obj = event["data"]["object"]
        return (obj.get("metadata") or {}).get("orderCode") or obj.get("client_reference_id")
    except (ValueError, KeyError, TypeError, AttributeError):
        return None


class StripeGateway:
    method = PaymentMethod.STRIPE

    def __init__(self, config: StripeConfig):
        self.config = config
        stripe.default_http_client = stripe.RequestsClient(timeout=config.timeout_seconds)

    def supports_currency(self, currency: str) -> bool:
        return bool(currency)

    def expected_amount(self, payment: Payment) -> int:
        return to_minor_units(payment.final_amount, payment.currency)

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise TransientGatewayError(f"Stripe unavailable: {exc}") from exc
        except stripe.APIError as exc:
            raise TransientGatewayError(f"Stripe API error: {exc}") from exc
        except stripe.StripeError as exc:
            raise GatewayError(f"Stripe error: {exc}") from exc

    async def create_payable(self, payment: Payment) -> PayableIntent:
        session = await self._create_session(
            payment, idempotency_key=f"checkout_{payment.order_code}"
        )
        logger.info("Stripe session %s created for %s", session["id"], payment.order_code)
        return PayableIntent(url=session["url"], gateway_reference=session["id"])

    async def create_qr_payable(self, payment: Payment) -> PayableIntent:
        """A second Checkout Session limited to wallets paid by scanning a QR code.

        It carries the same order code, so whichever session is paid
        reconciles the payment.
        """
        session = await self._create_session(
            payment,
            idempotency_key=f"checkout_qr_{payment.order_code}",
            payment_method_types=list(QR_PAYMENT_METHODS),
            payment_method_options={"wechat_pay": {"client": "web"}},
        )
        logger.info("Stripe QR session %s created for %s", session["id"], payment.order_code)
        # Stripe renders the wallet QR code on the hosted page
        return PayableIntent(
            url=session["url"], gateway_reference=session["id"], qr_payload=session["url"]
        )

    async def _create_session(self, payment: Payment, idempotency_key: str, **extra):
        currency = payment.currency.lower()
        line_items = [
            {
                "price_data": {
                    "currency": currency,
                    "unit_amount": to_minor_units(item.price, payment.currency),
                    "product_data": {"name": item.course_title or f"Course {item.course_id}"},
                },
                "quantity": 1,
            }
            for item in payment.items
        ]
        session = await self._call(
            stripe.checkout.Session.create,
            mode="payment",
            line_items=line_items,
            success_url=f"{self.config.success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.config.cancel_url}?orderCode={payment.order_code}",
            client_reference_id=payment.order_code,
            metadata={"orderCode": payment.order_code, "studentId": payment.student_id},
            payment_intent_data={"metadata": {"orderCode": payment.order_code}},
            api_key=self.config.secret_key,
            idempotency_key=idempotency_key,
            **extra,
        )
        if not session.get("url"):
            raise GatewayError("Stripe returned a session without a checkout url")
        return session

    async def verify_callback(self, callback: RawCallback) -> VerificationResult:
        if not callback.body:
            # Return page: /stripe/success?session_id=...; the query string is
            # untrusted, so nothing in it may name a payment to fail
            return await self._verify_session(callback.query.get("session_id"), None, None)

        if not self.config.webhook_secret:
            return VerificationRejected("stripe webhook secret is not configured")
        signature = callback.headers.get("stripe-signature")
        if not signature:
            return VerificationRejected("missing signature")

        try:
            stripe.Webhook.construct_event(
                callback.body,
                signature,
                self.config.webhook_secret,
                tolerance=self.config.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            # The order code is read unverified, only to record the rejection
            claimed = _claimed_order_code(callback.body)
            if "tolerance" in str(exc):
                return VerificationRejected("stale callback", claimed)
            return VerificationRejected("invalid signature", claimed)
        except ValueError:
            return VerificationRejected("malformed payload")

        event = json.loads(callback.body)
        event_type = event.get("type", "")
        if not event_type.startswith(SESSION_EVENT_PREFIX):
            return VerificationRejected(f"ignored event {event_type}")

        obj = (event.get("data") or {}).get("object") or {}
        claimed = (obj.get("metadata") or {}).get("orderCode") or obj.get("client_reference_id")
        return await self._verify_session(obj.get("id"), claimed, event_type)

    async def _verify_session(
        self, session_id: Optional[str], claimed_order: Optional[str], event_type: Optional[str]
    ) -> VerificationResult:
        if not session_id:
            return VerificationRejected("missing session id")

        try:
            session = await self._call(
                stripe.checkout.Session.retrieve, session_id, api_key=self.config.secret_key
            )
        except TransientGatewayError:
            raise
        except GatewayError:
            return VerificationRejected("unknown checkout session", claimed_order)

        order_code = (session.get("metadata") or {}).get("orderCode") or session.get(
            "client_reference_id"
        )
        if not order_code:
            return VerificationRejected("checkout session has no order code")
        if claimed_order and claimed_order != order_code:
            logger.warning(
                "Stripe session %s belongs to %s, callback claimed %s",
                session_id,
                order_code,
                claimed_order,
            )
            return VerificationRejected("order code mismatch", claimed_order)

        outcome = _session_outcome(session, event_type)
        if outcome is None:
            return VerificationRejected("checkout session still open")

        payment_intent = session.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")

        return Verified(
            order_code=order_code,
            outcome=outcome,
            amount=session.get("amount_total"),
            transaction_id=payment_intent,
            gateway_reference=session.get("id"),
            message=f"session {session.get('status')}/{session.get('payment_status')}",
            raw={
                "id": session.get("id"),
                "status": session.get("status"),
                "payment_status": session.get("payment_status"),
                "amount_total": session.get("amount_total"),
                "currency": session.get("currency"),
                "payment_intent": payment_intent,
                "event_type": event_type,
            },
        )

    async def query_payment(self, payment: Payment) -> Dict[str, Any]:
        if not payment.gateway_order_code:
            raise GatewayError(f"No Stripe session recorded for {payment.order_code}")
        session = await self._call(
            stripe.checkout.Session.retrieve,
            payment.gateway_order_code,
            api_key=self.config.secret_key,
        )
        outcome = _session_outcome(session, None)
        return {
            "id": session.get("id"),
            "status": outcome.value if outcome else PaymentStatus.PENDING.value,
            "payment_status": session.get("payment_status"),
            "amount_total": session.get("amount_total"),
        }

    async def refund_payment(
        self, payment: Payment, amount: Optional[Decimal] = None, reason: str = ""
    ) -> Dict[str, Any]:
        if not payment.gateway_transaction_id:
            raise GatewayError(f"No Stripe payment intent recorded for {payment.order_code}")

        params = {
            "payment_intent": payment.gateway_transaction_id,
            "reason": "requested_by_customer",
            "metadata": {"orderCode": payment.order_code, "note": reason or ""},
        }
        if amount is not None:
            params["amount"] = to_minor_units(amount, payment.currency)
        refund = await self._call(
            stripe.Refund.create,
            api_key=self.config.secret_key,
            idempotency_key=f"refund_{payment.order_code}",
            **params,
        )
        return {"id": refund.get("id"), "status": refund.get("status")}
