import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import event

from conftest import setup_test_db
import lms_payments.admin.routes as admin_routes
from lms_payments.models.payment import Payment, PaymentItem


class DummyRequest:
    pass


class DummyTemplates:
    def __init__(self):
        self.rendered = []

    def TemplateResponse(self, request, name, context):
        self.rendered.append((name, context))
        return None


def count_queries(engine, func):
    queries = {"count": 0}

    def before_cursor_execute(*args, **kwargs):
        queries["count"] += 1

    event.listen(engine.sync_engine, "before_cursor_execute", before_cursor_execute)
    try:
        asyncio.run(func())
    finally:
        event.remove(engine.sync_engine, "before_cursor_execute", before_cursor_execute)
    return queries["count"]


def seed_payments(SessionLocal, count):
    async def seed():
        async with SessionLocal() as db:
            now = datetime.utcnow()
            for n in range(count):
                db.add(
                    Payment(
                        order_code=f"LMS{1760000000000 + n}SEEDED{n:02d}",
                        student_id=f"student-{n}",
                        payment_method="momo" if n % 2 else "stripe",
                        status="pending",
                        total_amount=Decimal("24.99"),
                        discount_amount=Decimal("0"),
                        final_amount=Decimal("24.99"),
                        currency="USD",
                        created_at=now - timedelta(minutes=n),
                        expired_at=now + timedelta(minutes=30),
                        items=[
                            PaymentItem(course_id=n, price=Decimal("24.99"), currency="USD")
                        ],
                    )
                )
            await db.commit()

    asyncio.run(seed())


def render_dashboard(monkeypatch, engine, TestingSessionLocal, **filters):
    templates = DummyTemplates()
    monkeypatch.setattr(admin_routes, "templates", templates)
    monkeypatch.setattr(admin_routes, "SessionLocal", TestingSessionLocal)

    params = dict(status="", method="", q="", page=1, message="", error="")
    params.update(filters)

    async def call():
        await admin_routes.admin_payments(DummyRequest(), operator="alice", **params)

    return count_queries(engine, call), templates.rendered[0][1]


def test_admin_payments_query_count_does_not_grow_with_rows(monkeypatch):
    engine, TestingSessionLocal = setup_test_db()
    seed_payments(TestingSessionLocal, 12)

    query_count, context = render_dashboard(monkeypatch, engine, TestingSessionLocal)

    # count, page of payments, one selectin load for all items
    assert query_count == 3
    assert context["total"] == 12
    assert len(context["payments"]) == 12
    assert context["payments"][0]["order_code"] == "LMS1760000000000SEEDED00"


def test_admin_payments_filters_by_method(monkeypatch):
    engine, TestingSessionLocal = setup_test_db()
    seed_payments(TestingSessionLocal, 4)

    _, context = render_dashboard(monkeypatch, engine, TestingSessionLocal, method="momo")

    assert context["total"] == 2
    assert {p["payment_method"] for p in context["payments"]} == {"momo"}
    assert context["selected_method"] == "momo"
