"""Checkout: turn a cart (or an explicit course list) into a pending payment.

Every rejection happens before a row is written. The payment is committed
as ``pending`` first and only then handed to the gateway, so no database
transaction is held open across a network call.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lms_payments.gateways.base import Gateway, PayableIntent
from lms_payments.gateways.registry import GatewayRegistry, resolve_gateway
from lms_payments.models.payment import Payment, PaymentItem, PaymentMethod, PaymentStatus
from lms_payments.services.cart_service import get_cart_snapshot, get_courses
from lms_payments.services.enrollment_service import enrolled_course_ids
from lms_payments.services.errors import (
    AlreadyEnrolled,
    CheckoutError,
    CourseNotFound,
    GatewayError,
    InvalidTransition,
    PaymentNotFound,
)
from lms_payments.services.order_code import generate_order_code

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 30
ORDER_CODE_ATTEMPTS = 3


@dataclass(frozen=True)
class _Line:
    course_id: int
    price: Decimal
    original_price: Optional[Decimal]
    currency: str


async def create_payment_from_cart(
    db: AsyncSession,
    gateways: GatewayRegistry,
    student_id: str,
    method,
    coupon_code: Optional[str] = None,
    description: Optional[str] = None,
    ttl_minutes: int = DEFAULT_TTL_MINUTES,
    now: Optional[datetime] = None,
) -> Tuple[Payment, PayableIntent]:
    gateway = resolve_gateway(gateways, method)
    cart = await get_cart_snapshot(db, student_id)
    if not cart:
        raise CheckoutError("Cart is empty")

    lines = [
        _Line(item.course_id, Decimal(item.price_at_add), item.original_price, item.currency)
        for item in cart
    ]
    payment = await _create_pending_payment(
        db, student_id, gateway, lines, coupon_code, description, ttl_minutes, now
    )
    return payment, await _attach_payable(db, gateway, payment)


async def create_payment_for_courses(
    db: AsyncSession,
    gateways: GatewayRegistry,
    student_id: str,
    method,
    course_ids: Iterable[int],
    coupon_code: Optional[str] = None,
    description: Optional[str] = None,
    ttl_minutes: int = DEFAULT_TTL_MINUTES,
    now: Optional[datetime] = None,
) -> Tuple[Payment, PayableIntent]:
    """Buy now: charge the live catalogue price of ``course_ids``."""
    gateway = resolve_gateway(gateways, method)
    course_ids = list(course_ids)
    if not course_ids:
        raise CheckoutError("No courses selected")

    courses = await get_courses(db, course_ids)
    lines = []
    for course_id in course_ids:
        course = courses.get(course_id)
        if course is None:
            raise CourseNotFound(f"Course {course_id} not found")
        lines.append(_Line(course_id, Decimal(course.price), course.original_price, course.currency))

    payment = await _create_pending_payment(
        db, student_id, gateway, lines, coupon_code, description, ttl_minutes, now
    )
    return payment, await _attach_payable(db, gateway, payment)


async def _validate_lines(
    db: AsyncSession, student_id: str, gateway: Gateway, lines: List[_Line]
):
    course_ids = [line.course_id for line in lines]
    if len(set(course_ids)) != len(course_ids):
        raise CheckoutError("The same course appears twice in the order")

    courses = await get_courses(db, course_ids)
    for course_id in course_ids:
        course = courses.get(course_id)
        if course is None or not course.is_published:
            raise CourseNotFound(f"Course {course_id} not found")

    already = await enrolled_course_ids(db, student_id, course_ids)
    if already:
        listed = ", ".join(str(course_id) for course_id in sorted(already))
        raise AlreadyEnrolled(f"Already enrolled in course(s): {listed}")

    currencies = {line.currency.upper() for line in lines}
    if len(currencies) > 1:
        raise CheckoutError("All items in one payment must share a currency")
    currency = currencies.pop()
    if not gateway.supports_currency(currency):
        raise CheckoutError(f"{gateway.method.value} cannot charge in {currency}")

    for line in lines:
        if line.price < 0:
            raise CheckoutError(f"Invalid price for course {line.course_id}")

    # Plain snapshot; a rollback on order code collision expires ORM rows
    snapshots = {cid: (c.title, c.thumbnail_url) for cid, c in courses.items()}
    return snapshots, currency


def _build_items(lines: List[_Line], snapshots) -> List[PaymentItem]:
    items = []
    for line in lines:
        title, thumbnail = snapshots[line.course_id]
        original = Decimal(line.original_price) if line.original_price is not None else line.price
        # A discount is the gap between list and paid price, never negative
        original = max(original, line.price)
        items.append(
            PaymentItem(
                course_id=line.course_id,
                price=line.price,
                original_price=original,
                discount_amount=original - line.price,
                currency=line.currency.upper(),
                course_title=title,
                course_thumbnail=thumbnail,
            )
        )
    return items


async def _create_pending_payment(
    db: AsyncSession,
    student_id: str,
    gateway: Gateway,
    lines: List[_Line],
    coupon_code: Optional[str],
    description: Optional[str],
    ttl_minutes: int,
    now: Optional[datetime],
) -> Payment:
    snapshots, currency = await _validate_lines(db, student_id, gateway, lines)
    now = now or datetime.utcnow()

    for attempt in range(1, ORDER_CODE_ATTEMPTS + 1):
        items = _build_items(lines, snapshots)
        total = sum((item.original_price for item in items), Decimal("0"))
        discount = sum((item.discount_amount for item in items), Decimal("0"))
        final = total - discount
        if final < 0 or final != sum((item.price for item in items), Decimal("0")):
            raise CheckoutError("Order total does not add up")

        payment = Payment(
            order_code=generate_order_code(),
            student_id=student_id,
            payment_method=gateway.method.value,
            status=PaymentStatus.PENDING.value,
            total_amount=total,
            discount_amount=discount,
            final_amount=final,
            currency=currency,
            coupon_code=coupon_code,
            description=description,
            created_at=now,
            updated_at=now,
            expired_at=now + timedelta(minutes=ttl_minutes),
            items=items,
        )
        db.add(payment)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.warning("Order code collision on attempt %s, retrying", attempt)
            continue
        logger.info(
            "Payment %s created for student %s: %s %s via %s",
            payment.order_code,
            student_id,
            final,
            currency,
            gateway.method.value,
        )
        return payment

    raise CheckoutError("Could not allocate an order code, please retry")


async def _attach_payable(db: AsyncSession, gateway: Gateway, payment: Payment) -> PayableIntent:
    try:
        intent = await gateway.create_payable(payment)
    except GatewayError as exc:
        payment.status = PaymentStatus.FAILED.value
        payment.failure_reason = f"gateway error: {exc.detail}"
        payment.updated_at = datetime.utcnow()
        await db.commit()
        logger.error("Gateway refused payment %s: %s", payment.order_code, exc.detail)
        raise

    payment.gateway_order_code = intent.gateway_reference
    payment.gateway_response = json.dumps(
        {"payment_url": intent.url, "qr_payload": intent.qr_payload}
    )
    await db.commit()
    return intent


async def create_stripe_qr(
    db: AsyncSession,
    gateways: GatewayRegistry,
    order_code: str,
    student_id: str,
    now: Optional[datetime] = None,
) -> Tuple[Payment, PayableIntent]:
    """Re-issue an open Stripe payment as a QR-code wallet checkout.

    A refused request leaves the payment pending; the first session still works.
    """
    now = now or datetime.utcnow()
    payment = await get_payment_by_order_code(db, order_code, student_id=student_id)
    if payment.payment_method != PaymentMethod.STRIPE.value:
        raise InvalidTransition("QR checkout exists only for Stripe payments")
    if payment.status != PaymentStatus.PENDING.value or payment.is_expired(now):
        raise InvalidTransition(f"Payment {order_code} is no longer payable")
    gateway = resolve_gateway(gateways, PaymentMethod.STRIPE)
    # Close the read transaction before calling out
    await db.commit()

    intent = await gateway.create_qr_payable(payment)

    # A callback may have settled the payment meanwhile; leave its record alone
    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING.value)
        .values(
            gateway_order_code=intent.gateway_reference,
            gateway_response=json.dumps(
                {"payment_url": intent.url, "qr_payload": intent.qr_payload}
            ),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.info("Stripe QR checkout %s issued for %s", intent.gateway_reference, order_code)
    return await get_payment_by_order_code(db, order_code), intent


async def get_payment_by_order_code(
    db: AsyncSession, order_code: str, student_id: Optional[str] = None
) -> Payment:
    query = select(Payment).filter_by(order_code=order_code)
    if student_id is not None:
        query = query.filter_by(student_id=student_id)
    result = await db.execute(query.execution_options(populate_existing=True))
    payment = result.scalars().first()
    if payment is None:
        raise PaymentNotFound(f"Payment {order_code} not found")
    return payment


async def list_payments(
    db: AsyncSession,
    student_id: Optional[str] = None,
    status: Optional[str] = None,
    method: Optional[str] = None,
    q: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[Payment], int]:
    filters = []
    if student_id:
        filters.append(Payment.student_id == student_id)
    if status:
        filters.append(Payment.status == status)
    if method:
        filters.append(Payment.payment_method == method)
    if q:
        filters.append(
            or_(
                Payment.order_code.ilike(f"%{q}%"),
                Payment.student_id.ilike(f"%{q}%"),
                Payment.gateway_transaction_id.ilike(f"%{q}%"),
            )
        )

    total = await db.scalar(select(func.count(Payment.id)).where(*filters))
    result = await db.execute(
        select(Payment)
        .where(*filters)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total or 0


def serialize_payment(payment: Payment, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()

    def _dt(value):
        return value.isoformat() if value else None

    return {
        "order_code": payment.order_code,
        "student_id": payment.student_id,
        "payment_method": payment.payment_method,
        "status": payment.status,
        "total_amount": str(payment.total_amount),
        "discount_amount": str(payment.discount_amount),
        "final_amount": str(payment.final_amount),
        "currency": payment.currency,
        "coupon_code": payment.coupon_code,
        "description": payment.description,
        "gateway_transaction_id": payment.gateway_transaction_id,
        "failure_reason": payment.failure_reason,
        "created_at": _dt(payment.created_at),
        "expired_at": _dt(payment.expired_at),
        "paid_at": _dt(payment.paid_at),
        "refunded_at": _dt(payment.refunded_at),
        "verified_by": payment.verified_by,
        "is_expired": payment.is_expired(now),
        "items": [
            {
                "course_id": item.course_id,
                "course_title": item.course_title,
                "course_thumbnail": item.course_thumbnail,
                "price": str(item.price),
                "original_price": str(item.original_price) if item.original_price is not None else None,
                "discount_amount": str(item.discount_amount) if item.discount_amount is not None else None,
                "currency": item.currency,
            }
            for item in payment.items
        ],
    }


async def expire_stale_payments(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Cancel pending payments whose deadline passed. Returns how many changed."""
    now = now or datetime.utcnow()
    result = await db.execute(
        update(Payment)
        .where(
            Payment.status == PaymentStatus.PENDING.value,
            Payment.expired_at <= now,
        )
        .values(status=PaymentStatus.CANCELLED.value, failure_reason="expired", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.info("Expired %s stale pending payment(s)", result.rowcount)
    return result.rowcount
