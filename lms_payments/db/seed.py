"""Populate the database with demo courses and a cart asynchronously."""

import asyncio
from decimal import Decimal

from sqlalchemy import delete

from lms_payments.db.base_class import Base
from lms_payments.db.session import DATABASE_URL, SessionLocal, engine
from lms_payments.models.cart import CartItem
from lms_payments.models.course import Course
from lms_payments.models.enrollment import Enrollment
from lms_payments.models.payment import Payment

DEMO_STUDENT = "student-demo"

print(f"🗂 Using database: {DATABASE_URL}")


async def main() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with SessionLocal() as session:
        print("🧹 Clearing tables...")
        await session.execute(delete(CartItem))
        await session.execute(delete(Enrollment))
        await session.execute(delete(Payment))
        await session.execute(delete(Course))

        print("➕ Adding courses...")
        python = Course(
            title="Python from Scratch",
            price=Decimal("24.99"),
            original_price=Decimal("49.99"),
            currency="USD",
            is_published=True,
        )
        sql = Course(title="Practical SQL", price=Decimal("24.99"), currency="USD", is_published=True)
        session.add_all([python, sql])
        await session.commit()

        print(f"🛒 Filling the cart of {DEMO_STUDENT}...")
        for course in (python, sql):
            session.add(
                CartItem(
                    student_id=DEMO_STUDENT,
                    course_id=course.id,
                    price_at_add=course.price,
                    original_price=course.original_price,
                    currency=course.currency,
                )
            )
        await session.commit()

        print("✅ Database seeded.")


if __name__ == "__main__":
    asyncio.run(main())
