"""MoMo e-wallet gateway.

Two modes share one adapter:

* ``personal`` (default): students transfer to a personal MoMo account using
  a deep link or QR code; an operator later attests the transfer with the
  MoMo transaction number.
* ``business``: the MoMo v2 API creates a ``captureWallet`` payment and
  notifies ``/api/payments/momo/ipn`` with an HMAC-SHA256 signed body.
"""

import hashlib
import hmac
import json
import logging
import re
import time
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import httpx

from lms_payments.config import MomoConfig
from lms_payments.gateways.base import (
    PayableIntent,
    RawCallback,
    VerificationRejected,
    VerificationResult,
    Verified,
)
from lms_payments.models.payment import Payment, PaymentMethod, PaymentStatus
from lms_payments.services.errors import GatewayError, TransientGatewayError

logger = logging.getLogger(__name__)

# Fields MoMo signs in IPN and redirect callbacks, in signing order
CALLBACK_SIGNED_FIELDS = (
    "amount",
    "extraData",
    "message",
    "orderId",
    "orderInfo",
    "orderType",
    "partnerCode",
    "payType",
    "requestId",
    "responseTime",
    "resultCode",
    "transId",
)
REQUIRED_CALLBACK_FIELDS = (
    "partnerCode",
    "orderId",
    "requestId",
    "amount",
    "resultCode",
    "transId",
    "responseTime",
    "signature",
)

RESULT_SUCCESS = 0
RESULT_AUTHORIZED = 9000
RESULT_USER_CANCELLED = 1006

SUPPORTED_CURRENCIES = ("USD", "VND")


def map_result_code(result_code: int) -> PaymentStatus:
    if result_code == RESULT_SUCCESS:
        return PaymentStatus.COMPLETED
    if result_code == RESULT_AUTHORIZED:
        return PaymentStatus.PROCESSING
    if result_code == RESULT_USER_CANCELLED:
        return PaymentStatus.CANCELLED
    return PaymentStatus.FAILED


def transfer_note(order_code: str) -> str:
    return f"THANHTOAN_{order_code}"


class MomoGateway:
    method = PaymentMethod.MOMO

    def __init__(
        self,
        config: MomoConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._transport = transport
        self._clock = clock
        self._reference_re = re.compile(config.reference_pattern)

    # --- signing ---

    def sign(self, raw: str) -> str:
        return hmac.new(
            self.config.secret_key.encode("utf-8"), raw.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def callback_signature_string(self, data: Dict[str, Any]) -> str:
        parts = [f"accessKey={self.config.access_key}"]
        for name in CALLBACK_SIGNED_FIELDS:
            value = data.get(name)
            parts.append(f"{name}={'' if value is None else value}")
        return "&".join(parts)

    # --- amounts ---

    def supports_currency(self, currency: str) -> bool:
        return (currency or "").upper() in SUPPORTED_CURRENCIES

    def _to_vnd(self, amount, currency: str) -> int:
        """Whole dong, rounded half up; MoMo only settles in VND."""
        amount = Decimal(amount)
        if not self.supports_currency(currency):
            raise GatewayError(f"MoMo cannot charge in {currency}")
        if currency.upper() == "USD":
            amount = amount * self.config.fx_rate
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def expected_amount(self, payment: Payment) -> int:
        return self._to_vnd(payment.final_amount, payment.currency)

    # --- payment creation ---

    async def create_payable(self, payment: Payment) -> PayableIntent:
        if self.config.is_personal:
            instructions = self.payment_instructions(payment)
            return PayableIntent(
                url=instructions["deep_link"],
                gateway_reference=instructions["manual_info"]["note"],
                qr_payload=instructions["qr"]["data"],
                instructions=instructions,
            )
        return await self._create_wallet_payment(payment)

    def payment_instructions(self, payment: Payment) -> Dict[str, Any]:
        amount = self.expected_amount(payment)
        note = transfer_note(payment.order_code)
        phone = self.config.payout_account_id
        name = self.config.payout_display_name

        deep_link = f"momo://transfer?phone={phone}&amount={amount}&note={quote(note, safe='')}"
        # Layout understood by the MoMo scanner: 2|99|phone|name|note|0|0|amount||vnd
        qr_data = f"2|99|{phone}|{name}|{note}|0|0|{amount}||vnd"

        return {
            "deep_link": deep_link,
            "steps": [
                "Open the MoMo app on your phone",
                'Select "Transfer Money" then "To Phone Number"',
                f"Enter phone number: {phone}",
                f"Enter amount: {amount:,} VND",
                f"Enter note: {note}",
                "Confirm the transfer",
                'Return to this page and click "I have transferred the money"',
            ],
            "manual_info": {"phone": phone, "name": name, "amount": amount, "note": note},
            "qr": {
                "data": qr_data,
                "description": "Scan this QR code with the MoMo app to fill in the transfer, then confirm it.",
            },
        }

    async def _create_wallet_payment(self, payment: Payment) -> PayableIntent:
        cfg = self.config
        amount = self.expected_amount(payment)
        request_id = f"{payment.order_code}-{int(self._clock() * 1000)}"
        order_info = payment.description or f"Payment for order {payment.order_code}"
        request_type = "captureWallet"
        extra_data = ""

        raw = (
            f"accessKey={cfg.access_key}&amount={amount}&extraData={extra_data}"
            f"&ipnUrl={cfg.ipn_url}&orderId={payment.order_code}&orderInfo={order_info}"
            f"&partnerCode={cfg.partner_code}&redirectUrl={cfg.redirect_url}"
            f"&requestId={request_id}&requestType={request_type}"
        )
        body = {
            "partnerCode": cfg.partner_code,
            "requestId": request_id,
            "amount": amount,
            "orderId": payment.order_code,
            "orderInfo": order_info,
            "redirectUrl": cfg.redirect_url,
            "ipnUrl": cfg.ipn_url,
            "requestType": request_type,
            "extraData": extra_data,
            "lang": "vi",
            "signature": self.sign(raw),
        }
        data = await self._post(cfg.endpoint, body)
        if data.get("resultCode") != RESULT_SUCCESS or not data.get("payUrl"):
            raise GatewayError(f"MoMo rejected the payment: {data.get('message', 'no message')}")

        return PayableIntent(
            url=data["payUrl"],
            gateway_reference=request_id,
            qr_payload=data.get("qrCodeUrl"),
            instructions={"deeplink": data.get("deeplink")} if data.get("deeplink") else None,
        )

    # --- callbacks ---

    async def verify_callback(self, callback: RawCallback) -> VerificationResult:
        if not self.config.secret_key or not self.config.access_key:
            return VerificationRejected("momo signing keys are not configured")

        if callback.body:
            try:
                data = json.loads(callback.body)
            except ValueError:
                return VerificationRejected("malformed payload")
        else:
            data = dict(callback.query)
        if not isinstance(data, dict):
            return VerificationRejected("malformed payload")

        order_code = data.get("orderId")
        order_code = str(order_code) if order_code not in (None, "") else None

        missing = [name for name in REQUIRED_CALLBACK_FIELDS if data.get(name) in (None, "")]
        if missing:
            return VerificationRejected(f"missing fields: {', '.join(missing)}", order_code)

        expected = self.sign(self.callback_signature_string(data))
        if not hmac.compare_digest(expected, str(data["signature"])):
            return VerificationRejected("invalid signature", order_code)

        if str(data["partnerCode"]) != self.config.partner_code:
            return VerificationRejected("partner code mismatch", order_code)

        try:
            amount = int(data["amount"])
            result_code = int(data["resultCode"])
            response_time = int(data["responseTime"])
        except (TypeError, ValueError):
            return VerificationRejected("malformed payload", order_code)

        age = self._clock() - response_time / 1000
        if age > self.config.callback_tolerance_seconds:
            return VerificationRejected("stale callback", order_code)

        return Verified(
            order_code=order_code,
            outcome=map_result_code(result_code),
            amount=amount,
            transaction_id=str(data["transId"]),
            gateway_reference=str(data["requestId"]),
            message=str(data.get("message") or ""),
            raw=data,
        )

    def attest_manual_payment(
        self,
        order_code: str,
        transaction_ref: str,
        operator: str,
        now: Optional[datetime] = None,
    ) -> VerificationResult:
        """Turn an operator's confirmation of a personal transfer into a verdict.

        The operator is expected to have matched the exact amount and the
        ``THANHTOAN_`` note in the receiving account before attesting.
        """
        transaction_ref = (transaction_ref or "").strip()
        if not operator:
            return VerificationRejected("operator identity required", order_code)
        if not self._reference_re.fullmatch(transaction_ref):
            return VerificationRejected("invalid transaction reference", order_code)

        verified_at = now or datetime.utcnow()
        logger.info(
            "Manual MoMo attestation order=%s ref=%s operator=%s",
            order_code,
            transaction_ref,
            operator,
        )
        return Verified(
            order_code=order_code,
            outcome=PaymentStatus.COMPLETED,
            transaction_id=transaction_ref,
            message="manual verification",
            raw={
                "transactionCode": transaction_ref,
                "verifiedBy": operator,
                "verifiedAt": verified_at.isoformat(),
                "method": "manual_admin_verification",
            },
            verified_by=operator,
            verified_at=verified_at,
        )

    # --- query / refund ---

    async def query_payment(self, payment: Payment) -> Dict[str, Any]:
        cfg = self.config
        request_id = str(int(self._clock() * 1000))
        raw = (
            f"accessKey={cfg.access_key}&orderId={payment.order_code}"
            f"&partnerCode={cfg.partner_code}&requestId={request_id}"
        )
        body = {
            "partnerCode": cfg.partner_code,
            "requestId": request_id,
            "orderId": payment.order_code,
            "signature": self.sign(raw),
            "lang": "vi",
        }
        data = await self._post(cfg.query_endpoint, body)
        if "resultCode" not in data:
            raise GatewayError("MoMo query response has no resultCode")
        data["status"] = map_result_code(int(data["resultCode"])).value
        return data

    async def refund_payment(
        self, payment: Payment, amount: Optional[Decimal] = None, reason: str = ""
    ) -> Dict[str, Any]:
        if self.config.is_personal:
            # Personal transfers have no API; the operator sends the money back by hand
            logger.warning(
                "Manual MoMo refund required order=%s ref=%s",
                payment.order_code,
                payment.gateway_transaction_id,
            )
            return {"manual": True, "orderId": payment.order_code}

        if not payment.gateway_transaction_id:
            raise GatewayError(f"No MoMo transaction recorded for {payment.order_code}")

        cfg = self.config
        # ``amount`` is in the payment's currency
        if amount is None:
            refund_amount = self.expected_amount(payment)
        else:
            refund_amount = self._to_vnd(amount, payment.currency)
        request_id = str(int(self._clock() * 1000))
        refund_order_id = f"{payment.order_code}R{request_id}"
        description = reason or f"Refund for order {payment.order_code}"
        raw = (
            f"accessKey={cfg.access_key}&amount={refund_amount}&description={description}"
            f"&orderId={refund_order_id}&partnerCode={cfg.partner_code}"
            f"&requestId={request_id}&transId={payment.gateway_transaction_id}"
        )
        body = {
            "partnerCode": cfg.partner_code,
            "orderId": refund_order_id,
            "requestId": request_id,
            "amount": refund_amount,
            "transId": int(payment.gateway_transaction_id),
            "description": description,
            "lang": "vi",
            "signature": self.sign(raw),
        }
        data = await self._post(cfg.refund_endpoint, body)
        if data.get("resultCode") != RESULT_SUCCESS:
            raise GatewayError(f"MoMo refund failed: {data.get('message', 'no message')}")
        return data

    async def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(url, json=body)
        except httpx.TransportError as exc:
            raise TransientGatewayError(f"MoMo unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise TransientGatewayError(f"MoMo returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError("MoMo returned a non-JSON response") from exc
        if not isinstance(data, dict):
            raise GatewayError("MoMo returned an unexpected response")
        return data
