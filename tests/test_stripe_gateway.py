import asyncio
import json
import time
from decimal import Decimal

import pytest
import stripe

from conftest import STRIPE_CONFIG, stripe_signature_header
from lms_payments.gateways.base import RawCallback
from lms_payments.gateways.stripe_gateway import StripeGateway
from lms_payments.models.payment import Payment, PaymentItem, PaymentStatus
from lms_payments.services.errors import GatewayError, TransientGatewayError

ORDER = "LMS1760000000000STRIPE01"
SESSION_ID = "cs_test_a1b2c3"


def make_payment(**kwargs):
    fields = dict(
        order_code=ORDER,
        student_id="student-1",
        final_amount=Decimal("49.98"),
        currency="USD",
        items=[
            PaymentItem(course_id=1, price=Decimal("24.99"), currency="USD", course_title="Course 1"),
            PaymentItem(course_id=2, price=Decimal("24.99"), currency="USD", course_title="Course 2"),
        ],
    )
    fields.update(kwargs)
    return Payment(**fields)


def session_object(order_code=ORDER, status="complete", payment_status="paid", amount=4998):
    return {
        "id": SESSION_ID,
        "object": "checkout.session",
        "status": status,
        "payment_status": payment_status,
        "amount_total": amount,
        "currency": "usd",
        "client_reference_id": order_code,
        "metadata": {"orderCode": order_code},
        "payment_intent": "pi_123",
    }


def webhook_body(event_type="checkout.session.completed", **session_kwargs):
    event = {
        "id": "evt_1",
        "object": "event",
        "type": event_type,
        "data": {"object": session_object(**session_kwargs)},
    }
    return json.dumps(event).encode()


def signed_callback(body, **kwargs):
    return RawCallback(body=body, headers={"stripe-signature": stripe_signature_header(body, **kwargs)})


@pytest.fixture
def retrieved(monkeypatch):
    """Makes Session.retrieve return whatever the test puts in the dict."""
    state = {"session": session_object(), "calls": []}

    def fake_retrieve(session_id, **kwargs):
        state["calls"].append((session_id, kwargs))
        if isinstance(state["session"], Exception):
            raise state["session"]
        return state["session"]

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", fake_retrieve)
    return state


def verify(callback):
    return asyncio.run(StripeGateway(STRIPE_CONFIG).verify_callback(callback))


def test_signed_webhook_is_verified_from_retrieved_session(retrieved):
    result = verify(signed_callback(webhook_body()))

    assert result
    assert result.order_code == ORDER
    assert result.outcome == PaymentStatus.COMPLETED
    assert result.amount == 4998
    assert result.transaction_id == "pi_123"
    assert result.gateway_reference == SESSION_ID
    assert retrieved["calls"][0][0] == SESSION_ID
    assert retrieved["calls"][0][1]["api_key"] == STRIPE_CONFIG.secret_key


def test_event_payload_is_not_trusted_over_fresh_session(retrieved):
    retrieved["session"] = session_object(status="open", payment_status="unpaid")
    result = verify(signed_callback(webhook_body()))
    assert not result
    assert result.order_code is None


def test_wrong_secret_is_invalid_signature(retrieved):
    body = webhook_body()
    result = verify(signed_callback(body, secret="whsec_wrong"))

    assert not result
    assert result.reason == "invalid signature"
    assert result.order_code == ORDER
    assert retrieved["calls"] == []


def test_old_signature_is_stale(retrieved):
    body = webhook_body()
    result = verify(signed_callback(body, timestamp=int(time.time()) - 3600))
    assert not result
    assert result.reason == "stale callback"


def test_missing_signature_header_is_rejected():
    result = verify(RawCallback(body=webhook_body()))
    assert not result
    assert result.reason == "missing signature"


def test_session_belonging_to_another_order_is_rejected(retrieved):
    retrieved["session"] = session_object(order_code="LMS1760000000000OTHER001")
    result = verify(signed_callback(webhook_body()))
    assert not result
    assert result.reason == "order code mismatch"


def test_non_checkout_events_are_ignored_without_naming_a_payment(retrieved):
    result = verify(signed_callback(webhook_body(event_type="customer.created")))
    assert not result
    assert result.order_code is None
    assert retrieved["calls"] == []


def test_expired_session_maps_to_cancelled(retrieved):
    retrieved["session"] = session_object(status="expired", payment_status="unpaid")
    result = verify(signed_callback(webhook_body(event_type="checkout.session.expired")))
    assert result
    assert result.outcome == PaymentStatus.CANCELLED


def test_async_payment_failure_maps_to_failed(retrieved):
    retrieved["session"] = session_object(status="complete", payment_status="unpaid")
    result = verify(
        signed_callback(webhook_body(event_type="checkout.session.async_payment_failed"))
    )
    assert result
    assert result.outcome == PaymentStatus.FAILED


def test_delayed_payment_is_processing(retrieved):
    retrieved["session"] = session_object(status="complete", payment_status="unpaid")
    result = verify(signed_callback(webhook_body()))
    assert result
    assert result.outcome == PaymentStatus.PROCESSING


def test_network_failure_during_retrieval_is_transient(retrieved):
    retrieved["session"] = stripe.APIConnectionError("connection reset")
    with pytest.raises(TransientGatewayError):
        verify(signed_callback(webhook_body()))


def test_unknown_session_is_rejected(retrieved):
    retrieved["session"] = stripe.InvalidRequestError("No such checkout.session", "id")
    result = verify(signed_callback(webhook_body()))
    assert not result
    assert result.reason == "unknown checkout session"


def test_return_page_uses_session_id_from_query(retrieved):
    result = verify(RawCallback(query={"session_id": SESSION_ID}))
    assert result
    assert result.outcome == PaymentStatus.COMPLETED


def test_create_payable_builds_checkout_session(monkeypatch):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": SESSION_ID, "url": f"https://checkout.stripe.com/c/pay/{SESSION_ID}"}

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    intent = asyncio.run(StripeGateway(STRIPE_CONFIG).create_payable(make_payment()))

    assert intent.gateway_reference == SESSION_ID
    assert intent.url.endswith(SESSION_ID)
    assert captured["mode"] == "payment"
    assert captured["client_reference_id"] == ORDER
    assert captured["metadata"]["orderCode"] == ORDER
    assert [item["price_data"]["unit_amount"] for item in captured["line_items"]] == [2499, 2499]
    assert captured["success_url"].endswith("?session_id={CHECKOUT_SESSION_ID}")


def test_create_payable_card_error_is_gateway_error(monkeypatch):
    def fake_create(**kwargs):
        raise stripe.InvalidRequestError("Invalid currency", "currency")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    with pytest.raises(GatewayError) as exc:
        asyncio.run(StripeGateway(STRIPE_CONFIG).create_payable(make_payment()))
    assert not isinstance(exc.value, TransientGatewayError)


def test_refund_targets_payment_intent(monkeypatch):
    captured = {}

    def fake_refund(**kwargs):
        captured.update(kwargs)
        return {"id": "re_1", "status": "succeeded"}

    monkeypatch.setattr(stripe.Refund, "create", fake_refund)
    result = asyncio.run(
        StripeGateway(STRIPE_CONFIG).refund_payment(
            make_payment(gateway_transaction_id="pi_123"), Decimal("24.99")
        )
    )

    assert result == {"id": "re_1", "status": "succeeded"}
    assert captured["payment_intent"] == "pi_123"
    assert captured["amount"] == 2499


def test_refund_without_payment_intent_fails():
    with pytest.raises(GatewayError):
        asyncio.run(StripeGateway(STRIPE_CONFIG).refund_payment(make_payment()))


def test_expected_amount_uses_minor_units():
    gateway = StripeGateway(STRIPE_CONFIG)
    assert gateway.expected_amount(make_payment()) == 4998
    assert gateway.expected_amount(make_payment(final_amount=Decimal("150000"), currency="VND")) == 150000


def test_query_reads_recorded_session(retrieved):
    retrieved["session"] = session_object(status="open", payment_status="unpaid")
    gateway = StripeGateway(STRIPE_CONFIG)

    result = asyncio.run(gateway.query_payment(make_payment(gateway_order_code=SESSION_ID)))

    assert result == {
        "id": SESSION_ID,
        "status": PaymentStatus.PENDING.value,
        "payment_status": "unpaid",
        "amount_total": 4998,
    }
    assert retrieved["calls"][0][0] == SESSION_ID


def test_query_maps_paid_session_to_completed(retrieved):
    gateway = StripeGateway(STRIPE_CONFIG)
    result = asyncio.run(gateway.query_payment(make_payment(gateway_order_code=SESSION_ID)))
    assert result["status"] == PaymentStatus.COMPLETED.value


def test_query_without_session_fails(retrieved):
    with pytest.raises(GatewayError):
        asyncio.run(StripeGateway(STRIPE_CONFIG).query_payment(make_payment()))
    assert retrieved["calls"] == []


def test_qr_payable_limits_session_to_wallets(monkeypatch):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "cs_test_qr", "url": "https://checkout.stripe.com/c/pay/cs_test_qr"}

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    intent = asyncio.run(StripeGateway(STRIPE_CONFIG).create_qr_payable(make_payment()))

    assert intent.gateway_reference == "cs_test_qr"
    assert intent.qr_payload == intent.url
    assert captured["payment_method_types"] == ["wechat_pay", "alipay"]
    assert captured["metadata"]["orderCode"] == ORDER
    assert captured["idempotency_key"] == f"checkout_qr_{ORDER}"


def test_stripe_accepts_any_currency():
    gateway = StripeGateway(STRIPE_CONFIG)
    assert gateway.supports_currency("EUR")
    assert not gateway.supports_currency("")
