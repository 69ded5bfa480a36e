# lms_payments/api/webhook_router.py
"""Gateway notifications and browser return pages.

Webhooks acknowledge anything that was processed or deliberately rejected,
so gateways do not keep re-sending forged or stale payloads. Only transient
failures (gateway unreachable during verification) ask for a retry.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from lms_payments.api.deps import get_db, get_gateways, settings_dependency
from lms_payments.config import Settings
from lms_payments.gateways.base import RawCallback
from lms_payments.gateways.registry import GatewayRegistry, resolve_gateway
from lms_payments.models.payment import PaymentMethod
from lms_payments.services import reconciliation
from lms_payments.services.errors import TransientGatewayError
from telegram_bot.notify import send_operator_alert

router = APIRouter(prefix="/api/payments", tags=["webhooks"])
logger = logging.getLogger(__name__)

MOMO_ACK = {"RspCode": "00", "Message": "Confirm Success"}
MOMO_RETRY = {"RspCode": "99", "Message": "Temporary error, please retry"}

# Outcomes an operator has to act on by hand
_ALERT_REASONS = (
    reconciliation.EXPIRED_BEFORE_CONFIRMATION,
    reconciliation.AMOUNT_MISMATCH,
)


def _result_redirect(settings: Settings, succeeded: bool, order_code: Optional[str]):
    page = "success" if succeeded else "failed"
    url = f"{settings.frontend_url}/student/payment/{page}"
    if order_code:
        url += f"?orderCode={order_code}"
    return RedirectResponse(url=url, status_code=302)


async def _alert_if_needed(outcome: reconciliation.CallbackOutcome):
    if outcome.applied and outcome.reason in _ALERT_REASONS:
        await send_operator_alert(
            f"Payment {outcome.order_code} needs attention: {outcome.reason}"
        )


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
):
    gateway = resolve_gateway(gateways, PaymentMethod.STRIPE)
    callback = RawCallback(
        body=await request.body(),
        headers={"stripe-signature": request.headers.get("stripe-signature", "")},
    )
    try:
        outcome = await reconciliation.handle_callback(db, gateway, callback)
    except TransientGatewayError as exc:
        logger.warning("Stripe webhook deferred: %s", exc.detail)
        return JSONResponse(status_code=503, content={"received": False})

    await _alert_if_needed(outcome)
    return {"received": True}


@router.post("/momo/ipn")
async def momo_ipn(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
):
    gateway = resolve_gateway(gateways, PaymentMethod.MOMO)
    callback = RawCallback(body=await request.body())
    try:
        outcome = await reconciliation.handle_callback(db, gateway, callback)
    except TransientGatewayError as exc:
        logger.warning("MoMo IPN deferred: %s", exc.detail)
        return JSONResponse(status_code=503, content=MOMO_RETRY)

    await _alert_if_needed(outcome)
    return MOMO_ACK


@router.get("/stripe/success")
async def stripe_success(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
    settings: Settings = Depends(settings_dependency),
):
    gateway = resolve_gateway(gateways, PaymentMethod.STRIPE)
    callback = RawCallback(query=dict(request.query_params))
    try:
        outcome = await reconciliation.handle_callback(db, gateway, callback)
    except TransientGatewayError as exc:
        logger.warning("Stripe return page could not confirm payment: %s", exc.detail)
        return _result_redirect(settings, False, None)
    return _result_redirect(settings, outcome.succeeded, outcome.order_code)


@router.get("/stripe/cancel")
async def stripe_cancel(
    orderCode: Optional[str] = None,
    settings: Settings = Depends(settings_dependency),
):
    # Leaving checkout is not proof of anything; the session expiry webhook
    # or the expiry sweep closes the payment.
    return _result_redirect(settings, False, orderCode)


@router.get("/momo/return")
async def momo_return(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
    settings: Settings = Depends(settings_dependency),
):
    gateway = resolve_gateway(gateways, PaymentMethod.MOMO)
    callback = RawCallback(query=dict(request.query_params))
    try:
        outcome = await reconciliation.handle_callback(db, gateway, callback)
    except TransientGatewayError as exc:
        logger.warning("MoMo return page could not confirm payment: %s", exc.detail)
        return _result_redirect(settings, False, request.query_params.get("orderId"))
    return _result_redirect(
        settings, outcome.succeeded, outcome.order_code or request.query_params.get("orderId")
    )
