import asyncio
import hashlib
import hmac
import json
import sys
import time
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

sys.path.append(str(Path(__file__).resolve().parents[1]))

from lms_payments.config import MomoConfig, Settings, StripeConfig
from lms_payments.db.base_class import Base
from lms_payments.gateways.momo import MomoGateway
from lms_payments.models.cart import CartItem
from lms_payments.models.course import Course
from lms_payments.models.enrollment import Enrollment  # noqa: F401
from lms_payments.models.payment import Payment

STUDENT = "student-1"

MOMO_CONFIG = MomoConfig(
    payout_account_id="0901234567",
    payout_display_name="LMS System",
    fx_rate=Decimal("24000"),
    partner_code="MOMOTEST",
    access_key="F8BBA842ECF85",
    secret_key="K951B6PE1waDMi640xX08PD3vg6EkVlz",
)
STRIPE_CONFIG = StripeConfig(
    secret_key="sk_test_123",
    webhook_secret="whsec_test_secret",
    success_url="http://testserver/api/payments/stripe/success",
    cancel_url="http://testserver/api/payments/stripe/cancel",
)
SETTINGS = Settings(
    frontend_url="http://frontend.test",
    operators={"alice": "s3cret"},
    stripe=STRIPE_CONFIG,
    momo=MOMO_CONFIG,
)


def setup_test_db(url="sqlite+aiosqlite:///:memory:"):
    if url.endswith(":memory:"):
        engine = create_async_engine(
            url, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    else:
        engine = create_async_engine(url, connect_args={"check_same_thread": False})
    TestingSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)

    async def init_models():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    return engine, TestingSessionLocal


@pytest.fixture
def Session():
    engine, TestingSessionLocal = setup_test_db()
    yield TestingSessionLocal
    asyncio.run(engine.dispose())


@pytest.fixture
def momo_gateway():
    return MomoGateway(MOMO_CONFIG)


def seed_catalogue(Session, prices=("24.99", "24.99"), currency="USD", in_cart_of=STUDENT):
    """Create published courses and put them in a student's cart. Returns ids."""

    async def seed():
        async with Session() as db:
            courses = [
                Course(
                    title=f"Course {n}",
                    price=Decimal(price),
                    original_price=Decimal(price) + Decimal("10"),
                    currency=currency,
                    is_published=True,
                )
                for n, price in enumerate(prices, start=1)
            ]
            db.add_all(courses)
            await db.commit()
            if in_cart_of:
                db.add_all(
                    [
                        CartItem(
                            student_id=in_cart_of,
                            course_id=c.id,
                            price_at_add=c.price,
                            original_price=c.original_price,
                            currency=c.currency,
                        )
                        for c in courses
                    ]
                )
                await db.commit()
            return [c.id for c in courses]

    return asyncio.run(seed())


def count_rows(Session, model, **filters):
    async def count():
        async with Session() as db:
            return await db.scalar(select(func.count()).select_from(model).filter_by(**filters))

    return asyncio.run(count())


def load_payment(Session, order_code):
    async def load():
        async with Session() as db:
            result = await db.execute(select(Payment).filter_by(order_code=order_code))
            return result.scalars().first()

    return asyncio.run(load())


def momo_ipn_payload(
    order_code,
    amount,
    result_code=0,
    trans_id="4088878653",
    response_time=None,
    secret=None,
    config=MOMO_CONFIG,
    **overrides,
):
    """A MoMo IPN body signed the way MoMo signs it."""
    data = {
        "partnerCode": config.partner_code,
        "orderId": order_code,
        "requestId": f"{order_code}-1",
        "amount": amount,
        "orderInfo": f"Payment for order {order_code}",
        "orderType": "momo_wallet",
        "transId": trans_id,
        "resultCode": result_code,
        "message": "Successful." if result_code == 0 else "Transaction denied.",
        "payType": "qr",
        "responseTime": response_time if response_time is not None else int(time.time() * 1000),
        "extraData": "",
    }
    data.update(overrides)
    raw = "&".join(
        [f"accessKey={config.access_key}"]
        + [
            f"{name}={data[name]}"
            for name in (
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
        ]
    )
    key = (secret or config.secret_key).encode()
    data["signature"] = hmac.new(key, raw.encode(), hashlib.sha256).hexdigest()
    return data


def momo_body(**kwargs):
    return json.dumps(momo_ipn_payload(**kwargs)).encode()


def stripe_signature_header(payload: bytes, secret=STRIPE_CONFIG.webhook_secret, timestamp=None):
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode()}".encode()
    v1 = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={v1}"

