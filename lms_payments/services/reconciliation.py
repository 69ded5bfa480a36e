"""Reconciliation engine: the only code that moves a payment between states.

Gateways authenticate callbacks without touching the database. Afterwards
each transition is one conditional ``UPDATE ... WHERE status IN (...)``;
when it matches no row another callback got there first and the call is a
no-op. Granting enrollments happens in the same transaction as the flip to
``completed`` and is committed once.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lms_payments.gateways.base import (
    Gateway,
    RawCallback,
    VerificationRejected,
    Verified,
)
from lms_payments.models.payment import (
    OPEN_STATUSES,
    Payment,
    PaymentMethod,
    PaymentStatus,
    allowed_sources,
)
from lms_payments.services.cart_service import clear_purchased_items
from lms_payments.services.enrollment_service import grant_enrollments, mark_refunded
from lms_payments.services.errors import (
    InvalidTransition,
    PaymentError,
    VerificationError,
)
from lms_payments.services.payment_service import get_payment_by_order_code

logger = logging.getLogger(__name__)

EXPIRED_BEFORE_CONFIRMATION = "expired before confirmation"
AMOUNT_MISMATCH = "amount mismatch"


@dataclass(frozen=True)
class CallbackOutcome:
    """What a callback did. ``applied`` is False for no-ops and duplicates."""

    order_code: Optional[str]
    status: Optional[str]
    applied: bool
    reason: Optional[str] = None
    enrollments_created: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentStatus.COMPLETED.value


async def handle_callback(
    db: AsyncSession,
    gateway: Gateway,
    callback: RawCallback,
    now: Optional[datetime] = None,
) -> CallbackOutcome:
    """Verify ``callback`` with ``gateway`` and apply the result.

    ``TransientGatewayError`` from verification propagates untouched and
    nothing is written; the ingress answers with a retryable status.
    """
    result = await gateway.verify_callback(callback)
    if not result:
        return await apply_rejection(db, result, gateway.method, now=now)
    return await apply_verified_outcome(db, result, gateway, now=now)


async def _load_payment(db: AsyncSession, order_code: str) -> Optional[Payment]:
    result = await db.execute(
        select(Payment)
        .filter_by(order_code=order_code)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def _conditional_update(
    db: AsyncSession, payment: Payment, target: PaymentStatus, values: Dict[str, Any]
) -> bool:
    sources = [status.value for status in allowed_sources(target)]
    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status.in_(sources))
        .values(status=target.value, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _transition(
    db: AsyncSession,
    payment: Payment,
    target: PaymentStatus,
    reason: Optional[str],
    now: datetime,
    extra: Optional[Dict[str, Any]] = None,
) -> CallbackOutcome:
    # Rollback expires the instance; read nothing off it until it is reloaded
    order_code = payment.order_code
    values = {"failure_reason": reason, "updated_at": now}
    values.update(extra or {})
    if not await _conditional_update(db, payment, target, values):
        await db.rollback()
        current = await _load_payment(db, order_code)
        logger.info("Payment %s already %s, ignoring %s", order_code, current.status, target.value)
        return CallbackOutcome(order_code, current.status, applied=False, reason=reason)

    await db.commit()
    await db.refresh(payment)
    logger.info("Payment %s -> %s (%s)", payment.order_code, target.value, reason or "no reason")
    return CallbackOutcome(payment.order_code, payment.status, applied=True, reason=reason)


async def apply_rejection(
    db: AsyncSession,
    rejection: VerificationRejected,
    method: PaymentMethod,
    now: Optional[datetime] = None,
) -> CallbackOutcome:
    """Fail the payment a rejected callback names, if it is still open."""
    logger.warning(
        "Rejected %s callback for %s: %s", method.value, rejection.order_code, rejection.reason
    )
    if not rejection.order_code:
        return CallbackOutcome(None, None, applied=False, reason=rejection.reason)

    payment = await _load_payment(db, rejection.order_code)
    if payment is None or payment.payment_method != method.value:
        return CallbackOutcome(rejection.order_code, None, applied=False, reason=rejection.reason)
    if payment.status not in OPEN_STATUSES:
        return CallbackOutcome(
            payment.order_code, payment.status, applied=False, reason=rejection.reason
        )
    return await _transition(
        db, payment, PaymentStatus.FAILED, rejection.reason, now or datetime.utcnow()
    )


async def apply_verified_outcome(
    db: AsyncSession,
    verified: Verified,
    gateway: Gateway,
    now: Optional[datetime] = None,
) -> CallbackOutcome:
    now = now or datetime.utcnow()
    payment = await _load_payment(db, verified.order_code)
    if payment is None:
        logger.warning("Verified callback for unknown order %s", verified.order_code)
        return CallbackOutcome(verified.order_code, None, applied=False, reason="unknown order")
    if payment.payment_method != gateway.method.value:
        logger.warning(
            "Callback from %s for %s payment %s",
            gateway.method.value,
            payment.payment_method,
            payment.order_code,
        )
        return CallbackOutcome(
            payment.order_code, payment.status, applied=False, reason="payment method mismatch"
        )

    extra = {"gateway_response": json.dumps(verified.raw, default=str)}
    if verified.transaction_id:
        extra["gateway_transaction_id"] = verified.transaction_id

    if verified.outcome != PaymentStatus.COMPLETED:
        reason = None
        if verified.outcome in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            reason = verified.message or verified.outcome.value
        return await _transition(db, payment, verified.outcome, reason, now, extra)

    if payment.status == PaymentStatus.COMPLETED.value:
        # Duplicate delivery of a success already applied
        return CallbackOutcome(payment.order_code, payment.status, applied=False)

    if verified.amount is not None and verified.amount != gateway.expected_amount(payment):
        logger.warning(
            "Amount mismatch for %s: gateway %s, expected %s",
            payment.order_code,
            verified.amount,
            gateway.expected_amount(payment),
        )
        return await _transition(db, payment, PaymentStatus.FAILED, AMOUNT_MISMATCH, now, extra)

    if payment.is_expired(now):
        logger.warning(
            "Payment %s confirmed after expiry, cancelling; refund gateway transaction %s",
            payment.order_code,
            verified.transaction_id,
        )
        return await _transition(
            db, payment, PaymentStatus.CANCELLED, EXPIRED_BEFORE_CONFIRMATION, now, extra
        )

    return await _complete(db, payment, verified, now, extra)


async def _complete(
    db: AsyncSession,
    payment: Payment,
    verified: Verified,
    now: datetime,
    extra: Dict[str, Any],
) -> CallbackOutcome:
    values = dict(extra, paid_at=now, updated_at=now, failure_reason=None)
    if verified.verified_by:
        values["verified_by"] = verified.verified_by
        values["verified_at"] = verified.verified_at or now

    order_code = payment.order_code
    if not await _conditional_update(db, payment, PaymentStatus.COMPLETED, values):
        await db.rollback()
        current = await _load_payment(db, order_code)
        logger.info("Payment %s already %s, completion skipped", order_code, current.status)
        return CallbackOutcome(order_code, current.status, applied=False)

    try:
        created = await grant_enrollments(db, payment.student_id, payment.items, payment.id)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Enrollment grant failed for %s, completion rolled back", order_code)
        raise

    await db.refresh(payment)
    status = payment.status
    logger.info(
        "Payment %s completed, %s enrollment(s) granted to %s",
        order_code,
        len(created),
        payment.student_id,
    )
    await _clear_cart(db, payment)
    return CallbackOutcome(order_code, status, applied=True, enrollments_created=len(created))


async def _clear_cart(db: AsyncSession, payment: Payment) -> None:
    order_code = payment.order_code
    student_id = payment.student_id
    course_ids = [item.course_id for item in payment.items]
    try:
        await clear_purchased_items(db, student_id, course_ids)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Cart cleanup failed after payment %s", order_code)


async def verify_manual_payment(
    db: AsyncSession,
    gateway,
    order_code: str,
    transaction_ref: str,
    operator: str,
    now: Optional[datetime] = None,
) -> CallbackOutcome:
    """Complete a personal MoMo transfer on an operator's word.

    Bad input raises ``VerificationError`` and leaves the payment untouched.
    """
    payment = await get_payment_by_order_code(db, order_code)
    if payment.payment_method != PaymentMethod.MOMO.value:
        raise InvalidTransition("Only MoMo payments can be verified manually")

    transaction_ref = (transaction_ref or "").strip()
    if payment.status == PaymentStatus.COMPLETED.value:
        if payment.gateway_transaction_id == transaction_ref:
            return CallbackOutcome(payment.order_code, payment.status, applied=False)
        raise InvalidTransition(f"Payment {order_code} is already completed")
    if payment.status not in OPEN_STATUSES:
        raise InvalidTransition(f"Payment {order_code} is {payment.status}")

    verdict = gateway.attest_manual_payment(order_code, transaction_ref, operator, now=now)
    if not verdict:
        raise VerificationError(verdict.reason)

    reused = await db.execute(
        select(Payment.order_code).where(
            Payment.gateway_transaction_id == transaction_ref,
            Payment.payment_method == PaymentMethod.MOMO.value,
            Payment.id != payment.id,
        )
    )
    other = reused.scalars().first()
    if other:
        raise VerificationError(f"Transaction reference already used for {other}")

    return await apply_verified_outcome(db, verdict, gateway, now=now)


async def mark_transfer_sent(
    db: AsyncSession,
    gateway,
    order_code: str,
    student_id: str,
    now: Optional[datetime] = None,
) -> Payment:
    """Student reports a manual transfer; the payment waits for an operator."""
    now = now or datetime.utcnow()
    payment = await get_payment_by_order_code(db, order_code, student_id=student_id)
    if payment.payment_method != PaymentMethod.MOMO.value or not gateway.config.is_personal:
        raise InvalidTransition("Only manual MoMo transfers can be reported as sent")
    if payment.status == PaymentStatus.PENDING_VERIFICATION.value:
        return payment
    if payment.status != PaymentStatus.PENDING.value:
        raise InvalidTransition(f"Payment {order_code} is {payment.status}")
    if payment.is_expired(now):
        raise InvalidTransition(f"Payment {order_code} has expired")

    outcome = await _transition(
        db, payment, PaymentStatus.PENDING_VERIFICATION, None, now
    )
    if not outcome.applied and outcome.status != PaymentStatus.PENDING_VERIFICATION.value:
        raise InvalidTransition(f"Payment {order_code} is {outcome.status}")
    return await get_payment_by_order_code(db, order_code)


def _merge_response(previous: Optional[str], key: str, value: Any) -> str:
    try:
        data = json.loads(previous) if previous else {}
    except ValueError:
        data = {"raw": previous}
    if not isinstance(data, dict):
        data = {"raw": data}
    data[key] = value
    return json.dumps(data, default=str)


async def refund_payment(
    db: AsyncSession,
    gateway: Gateway,
    order_code: str,
    amount: Optional[Decimal] = None,
    reason: str = "",
    operator: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Payment:
    """Refund at the gateway first, then record ``completed -> refunded``."""
    payment = await get_payment_by_order_code(db, order_code)
    if payment.status != PaymentStatus.COMPLETED.value:
        raise InvalidTransition(
            f"Only completed payments can be refunded, {order_code} is {payment.status}"
        )
    if amount is not None and (amount <= 0 or amount > payment.final_amount):
        raise PaymentError("Refund amount must be positive and at most the amount paid")
    # Close the read transaction before calling out
    await db.commit()

    result = await gateway.refund_payment(payment, amount, reason)

    now = now or datetime.utcnow()
    values = {
        "refunded_at": now,
        "updated_at": now,
        "failure_reason": reason or None,
        "gateway_response": _merge_response(payment.gateway_response, "refund", result),
    }
    if not await _conditional_update(db, payment, PaymentStatus.REFUNDED, values):
        await db.rollback()
        logger.error(
            "Refund of %s succeeded at the gateway but the payment changed meanwhile",
            order_code,
        )
        raise InvalidTransition(f"Payment {order_code} changed during refund")

    revoked = await mark_refunded(db, payment.id)
    await db.commit()
    await db.refresh(payment)
    logger.info(
        "Payment %s refunded by %s, %s enrollment(s) revoked",
        order_code,
        operator or "system",
        revoked,
    )
    return payment
