from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from urllib.parse import quote
import os

from lms_payments.api.deps import get_gateways, require_operator
from lms_payments.db.session import SessionLocal
from lms_payments.gateways.registry import GatewayRegistry, resolve_gateway
from lms_payments.models.payment import PaymentMethod, PaymentStatus
from lms_payments.services import payment_service, reconciliation
from lms_payments.services.errors import PaymentError
from starlette.status import HTTP_303_SEE_OTHER

admin_router = APIRouter()

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
templates = Jinja2Templates(directory=os.path.join(BASE_DIR, "templates"))

PAGE_SIZE = 50


@admin_router.get("/admin/payments", response_class=HTMLResponse)
async def admin_payments(
    request: Request,
    status: str = "",
    method: str = "",
    q: str = "",
    page: int = 1,
    message: str = "",
    error: str = "",
    operator: str = Depends(require_operator),
):
    page = max(page, 1)
    async with SessionLocal() as db:
        payments, total = await payment_service.list_payments(
            db,
            status=status or None,
            method=method or None,
            q=q.strip() or None,
            limit=PAGE_SIZE,
            offset=(page - 1) * PAGE_SIZE,
        )
        rows = [payment_service.serialize_payment(p) for p in payments]

    return templates.TemplateResponse(
        request,
        "payments.html",
        {
            "operator": operator,
            "payments": rows,
            "total": total,
            "page": page,
            "has_next": page * PAGE_SIZE < total,
            "statuses": [s.value for s in PaymentStatus],
            "methods": [m.value for m in PaymentMethod],
            "selected_status": status,
            "selected_method": method,
            "q": q,
            "message": message,
            "error": error,
        },
    )


@admin_router.post("/admin/payments/verify")
async def admin_verify_payment(
    order_code: str = Form(...),
    transaction_ref: str = Form(...),
    operator: str = Depends(require_operator),
    gateways: GatewayRegistry = Depends(get_gateways),
):
    """Operator confirms a manual MoMo transfer from the payments page."""
    try:
        gateway = resolve_gateway(gateways, PaymentMethod.MOMO)
        async with SessionLocal() as db:
            outcome = await reconciliation.verify_manual_payment(
                db, gateway, order_code, transaction_ref, operator
            )
    except PaymentError as exc:
        return RedirectResponse(
            url=f"/admin/payments?q={quote(order_code)}&error={quote(exc.detail)}",
            status_code=HTTP_303_SEE_OTHER,
        )

    message = f"{order_code}: {outcome.status}"
    if outcome.reason:
        message += f" ({outcome.reason})"
    return RedirectResponse(
        url=f"/admin/payments?q={quote(order_code)}&message={quote(message)}",
        status_code=HTTP_303_SEE_OTHER,
    )
