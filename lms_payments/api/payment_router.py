# lms_payments/api/payment_router.py
"""Student checkout endpoints and operator actions under /api/payments."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from lms_payments.api.deps import (
    current_student,
    get_db,
    get_gateways,
    require_operator,
    settings_dependency,
)
from lms_payments.api.schemas import (
    BuyNowRequest,
    CheckoutRequest,
    ManualVerificationRequest,
    RefundRequest,
)
from lms_payments.config import Settings
from lms_payments.gateways.registry import GatewayRegistry, resolve_gateway
from lms_payments.models.payment import PaymentMethod
from lms_payments.services import payment_service, reconciliation
from lms_payments.services.errors import InvalidTransition
from telegram_bot.notify import send_operator_alert

router = APIRouter(prefix="/api/payments", tags=["payments"])
logger = logging.getLogger(__name__)


def _checkout_response(payment, intent):
    return {
        "payment": payment_service.serialize_payment(payment),
        "payment_url": intent.url,
        "qr_code": intent.qr_payload,
        "instructions": intent.instructions,
    }


@router.post("/checkout", status_code=201)
async def checkout_cart(
    body: CheckoutRequest,
    student_id: str = Depends(current_student),
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
    settings: Settings = Depends(settings_dependency),
):
    """Create a payment for everything in the student's cart."""
    payment, intent = await payment_service.create_payment_from_cart(
        db,
        gateways,
        student_id,
        body.payment_method,
        coupon_code=body.coupon_code,
        description=body.description,
        ttl_minutes=settings.payment_ttl_minutes,
    )
    return _checkout_response(payment, intent)


@router.post("", status_code=201)
async def buy_now(
    body: BuyNowRequest,
    student_id: str = Depends(current_student),
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
    settings: Settings = Depends(settings_dependency),
):
    payment, intent = await payment_service.create_payment_for_courses(
        db,
        gateways,
        student_id,
        body.payment_method,
        body.course_ids,
        coupon_code=body.coupon_code,
        description=body.description,
        ttl_minutes=settings.payment_ttl_minutes,
    )
    return _checkout_response(payment, intent)


@router.get("")
async def list_my_payments(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    student_id: str = Depends(current_student),
    db: AsyncSession = Depends(get_db),
):
    payments, total = await payment_service.list_payments(
        db, student_id=student_id, status=status, limit=limit, offset=(page - 1) * limit
    )
    return {
        "payments": [payment_service.serialize_payment(p) for p in payments],
        "total": total,
        "page": page,
        "limit": limit,
    }


@router.post("/maintenance/expire")
async def expire_stale(
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
):
    expired = await payment_service.expire_stale_payments(db)
    logger.info("Expiry sweep by %s cancelled %s payment(s)", operator, expired)
    return {"expired": expired}


@router.get("/{order_code}")
async def get_payment(
    order_code: str,
    student_id: str = Depends(current_student),
    db: AsyncSession = Depends(get_db),
):
    payment = await payment_service.get_payment_by_order_code(db, order_code, student_id)
    return payment_service.serialize_payment(payment)


@router.get("/{order_code}/instructions")
async def get_transfer_instructions(
    order_code: str,
    student_id: str = Depends(current_student),
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
):
    payment = await payment_service.get_payment_by_order_code(db, order_code, student_id)
    if payment.payment_method != PaymentMethod.MOMO.value:
        raise InvalidTransition("Transfer instructions exist only for MoMo payments")
    gateway = resolve_gateway(gateways, PaymentMethod.MOMO)
    return {
        "order_code": payment.order_code,
        "status": payment.status,
        "expired_at": payment.expired_at.isoformat(),
        **gateway.payment_instructions(payment),
    }


@router.post("/{order_code}/stripe-qr")
async def create_stripe_qr(
    order_code: str,
    student_id: str = Depends(current_student),
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
):
    """Pay an open Stripe order by scanning a WeChat Pay or Alipay QR code."""
    payment, intent = await payment_service.create_stripe_qr(db, gateways, order_code, student_id)
    return _checkout_response(payment, intent)


@router.post("/{order_code}/mark-sent")
async def mark_transfer_sent(
    order_code: str,
    student_id: str = Depends(current_student),
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
):
    """Student confirms the MoMo transfer was made; an operator must verify it."""
    gateway = resolve_gateway(gateways, PaymentMethod.MOMO)
    payment = await reconciliation.mark_transfer_sent(db, gateway, order_code, student_id)
    await send_operator_alert(
        f"MoMo transfer reported: {payment.order_code}, "
        f"{gateway.expected_amount(payment):,} VND, student {payment.student_id}"
    )
    return payment_service.serialize_payment(payment)


@router.post("/{order_code}/verify")
async def verify_manual_payment(
    order_code: str,
    body: ManualVerificationRequest,
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
):
    gateway = resolve_gateway(gateways, PaymentMethod.MOMO)
    outcome = await reconciliation.verify_manual_payment(
        db, gateway, order_code, body.transaction_ref, operator
    )
    if outcome.reason == reconciliation.EXPIRED_BEFORE_CONFIRMATION:
        await send_operator_alert(
            f"{order_code} verified after expiry and cancelled; refund ref {body.transaction_ref}"
        )
    payment = await payment_service.get_payment_by_order_code(db, order_code)
    return {
        "applied": outcome.applied,
        "enrollments_created": outcome.enrollments_created,
        "payment": payment_service.serialize_payment(payment),
    }


@router.post("/{order_code}/query")
async def query_gateway_status(
    order_code: str,
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
):
    """Ask the gateway what it knows about a payment. Nothing is changed locally."""
    payment = await payment_service.get_payment_by_order_code(db, order_code)
    gateway = resolve_gateway(gateways, payment.payment_method)
    # Close the read transaction before calling out
    await db.commit()
    gateway_state = await gateway.query_payment(payment)
    logger.info("Gateway status of %s queried by %s", order_code, operator)
    return {
        "order_code": payment.order_code,
        "status": payment.status,
        "gateway": gateway_state,
    }


@router.post("/{order_code}/refund")
async def refund_payment(
    order_code: str,
    body: RefundRequest,
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
):
    payment = await payment_service.get_payment_by_order_code(db, order_code)
    gateway = resolve_gateway(gateways, payment.payment_method)
    payment = await reconciliation.refund_payment(
        db, gateway, order_code, amount=body.amount, reason=body.reason, operator=operator
    )
    return payment_service.serialize_payment(payment)
