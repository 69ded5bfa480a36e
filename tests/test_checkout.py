import asyncio
import re
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from conftest import STUDENT, count_rows, load_payment, seed_catalogue
from lms_payments.models.cart import CartItem
from lms_payments.models.course import Course
from lms_payments.models.enrollment import Enrollment
from lms_payments.models.payment import Payment, PaymentMethod, PaymentStatus
from lms_payments.services import payment_service
from lms_payments.services.errors import (
    AlreadyEnrolled,
    CheckoutError,
    CourseNotFound,
    GatewayError,
)

NOW = datetime(2026, 10, 18, 9, 0, 0)


class BrokenGateway:
    method = PaymentMethod.STRIPE

    def supports_currency(self, currency):
        return True

    async def create_payable(self, payment):
        raise GatewayError("card network down")


def checkout(Session, gateways, method=PaymentMethod.MOMO, student_id=STUDENT, **kwargs):
    async def go():
        async with Session() as db:
            return await payment_service.create_payment_from_cart(
                db, gateways, student_id, method, now=NOW, **kwargs
            )

    return asyncio.run(go())


def buy_now(Session, gateways, course_ids, method=PaymentMethod.MOMO):
    async def go():
        async with Session() as db:
            return await payment_service.create_payment_for_courses(
                db, gateways, STUDENT, method, course_ids, now=NOW
            )

    return asyncio.run(go())


def execute(Session, statement):
    async def go():
        async with Session() as db:
            await db.execute(statement)
            await db.commit()

    asyncio.run(go())


def test_cart_checkout_creates_pending_payment(Session, momo_gateway):
    seed_catalogue(Session)
    payment, intent = checkout(Session, {PaymentMethod.MOMO: momo_gateway})

    assert re.fullmatch(r"LMS\d{13}[0-9A-Z]{8}", payment.order_code)
    stored = load_payment(Session, payment.order_code)
    assert stored.status == PaymentStatus.PENDING.value
    assert stored.payment_method == "momo"
    assert stored.total_amount == Decimal("69.98")
    assert stored.discount_amount == Decimal("20.00")
    assert stored.final_amount == Decimal("49.98")
    assert stored.final_amount == sum(item.price for item in stored.items)
    assert stored.expired_at == NOW + timedelta(minutes=30)
    assert stored.gateway_order_code == f"THANHTOAN_{payment.order_code}"
    assert sorted(item.course_title for item in stored.items) == ["Course 1", "Course 2"]

    assert intent.url.startswith("momo://transfer?")
    assert intent.instructions["manual_info"]["amount"] == 1199520
    # The cart is only emptied once the payment completes
    assert count_rows(Session, CartItem, student_id=STUDENT) == 2


def test_custom_ttl_sets_deadline(Session, momo_gateway):
    seed_catalogue(Session)
    payment, _ = checkout(Session, {PaymentMethod.MOMO: momo_gateway}, ttl_minutes=5)
    assert load_payment(Session, payment.order_code).expired_at == NOW + timedelta(minutes=5)


def test_empty_cart_is_rejected(Session, momo_gateway):
    with pytest.raises(CheckoutError) as exc:
        checkout(Session, {PaymentMethod.MOMO: momo_gateway})
    assert exc.value.detail == "Cart is empty"
    assert count_rows(Session, Payment) == 0


def test_unpublished_course_is_not_sold(Session, momo_gateway):
    ids = seed_catalogue(Session)
    execute(Session, update(Course).where(Course.id == ids[1]).values(is_published=False))

    with pytest.raises(CourseNotFound):
        checkout(Session, {PaymentMethod.MOMO: momo_gateway})
    assert count_rows(Session, Payment) == 0


def test_already_enrolled_course_blocks_checkout(Session, momo_gateway):
    ids = seed_catalogue(Session)

    async def enroll():
        async with Session() as db:
            db.add(Enrollment(student_id=STUDENT, course_id=ids[0]))
            await db.commit()

    asyncio.run(enroll())

    with pytest.raises(AlreadyEnrolled) as exc:
        checkout(Session, {PaymentMethod.MOMO: momo_gateway})
    assert str(ids[0]) in exc.value.detail
    assert exc.value.status_code == 409
    assert count_rows(Session, Payment) == 0


def test_mixed_currencies_are_rejected(Session, momo_gateway):
    seed_catalogue(Session, prices=("24.99",), currency="USD")
    seed_catalogue(Session, prices=("150000",), currency="VND")

    with pytest.raises(CheckoutError):
        checkout(Session, {PaymentMethod.MOMO: momo_gateway})
    assert count_rows(Session, Payment) == 0


def test_currency_momo_cannot_settle_is_rejected_before_writing(Session, momo_gateway):
    seed_catalogue(Session, currency="EUR")

    with pytest.raises(CheckoutError) as exc:
        checkout(Session, {PaymentMethod.MOMO: momo_gateway})

    assert exc.value.detail == "momo cannot charge in EUR"
    assert count_rows(Session, Payment) == 0


def test_unknown_or_unconfigured_method_is_rejected(Session, momo_gateway):
    seed_catalogue(Session)
    with pytest.raises(CheckoutError):
        checkout(Session, {PaymentMethod.MOMO: momo_gateway}, method="paypal")
    with pytest.raises(CheckoutError):
        checkout(Session, {PaymentMethod.MOMO: momo_gateway}, method=PaymentMethod.STRIPE)
    assert count_rows(Session, Payment) == 0


def test_gateway_failure_marks_payment_failed(Session):
    seed_catalogue(Session)
    with pytest.raises(GatewayError):
        checkout(Session, {PaymentMethod.STRIPE: BrokenGateway()}, method=PaymentMethod.STRIPE)

    async def only_payment():
        async with Session() as db:
            payments, total = await payment_service.list_payments(db)
            return payments[0], total

    payment, total = asyncio.run(only_payment())
    assert total == 1
    assert payment.status == PaymentStatus.FAILED.value
    assert payment.failure_reason == "gateway error: card network down"


def test_buy_now_uses_live_catalogue_price(Session, momo_gateway):
    ids = seed_catalogue(Session, prices=("24.99", "15.00"), in_cart_of=None)
    payment, _ = buy_now(Session, {PaymentMethod.MOMO: momo_gateway}, [ids[1]])

    stored = load_payment(Session, payment.order_code)
    assert stored.final_amount == Decimal("15.00")
    assert stored.total_amount == Decimal("25.00")
    assert [item.course_id for item in stored.items] == [ids[1]]


def test_buy_now_rejects_unknown_and_duplicate_courses(Session, momo_gateway):
    ids = seed_catalogue(Session, in_cart_of=None)
    gateways = {PaymentMethod.MOMO: momo_gateway}

    with pytest.raises(CourseNotFound):
        buy_now(Session, gateways, [ids[0], 9999])
    with pytest.raises(CheckoutError):
        buy_now(Session, gateways, [ids[0], ids[0]])
    assert count_rows(Session, Payment) == 0


def test_serialized_payment_reports_expiry(Session, momo_gateway):
    seed_catalogue(Session)
    payment, _ = checkout(Session, {PaymentMethod.MOMO: momo_gateway})
    stored = load_payment(Session, payment.order_code)

    fresh = payment_service.serialize_payment(stored, now=NOW)
    late = payment_service.serialize_payment(stored, now=NOW + timedelta(hours=1))

    assert fresh["is_expired"] is False
    assert late["is_expired"] is True
    assert Decimal(fresh["final_amount"]) == Decimal("49.98")
    assert len(fresh["items"]) == 2
