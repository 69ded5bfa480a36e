import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from lms_payments.admin.routes import admin_router
from lms_payments.api import payment_router, webhook_router
from lms_payments.config import get_settings
from lms_payments.gateways.registry import build_gateways
from lms_payments.services.errors import PaymentError

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="LMS Payments")
app.state.gateways = build_gateways(settings)

# Gateway routes first: /stripe/success must not be read as an order code
app.include_router(webhook_router.router)
app.include_router(payment_router.router)
app.include_router(admin_router)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.get("/health")
async def health():
    return {"status": "ok"}
