"""Read-only cart snapshot and course lookups consumed at checkout."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from lms_payments.models.cart import CartItem
from lms_payments.models.course import Course


@dataclass(frozen=True)
class CartLine:
    course_id: int
    price_at_add: Decimal
    original_price: Optional[Decimal]
    currency: str


async def get_cart_snapshot(db: AsyncSession, student_id: str) -> List[CartLine]:
    result = await db.execute(
        select(CartItem).filter_by(student_id=student_id).order_by(CartItem.added_at)
    )
    return [
        CartLine(
            course_id=item.course_id,
            price_at_add=item.price_at_add,
            original_price=item.original_price,
            currency=item.currency,
        )
        for item in result.scalars().all()
    ]


async def clear_purchased_items(
    db: AsyncSession, student_id: str, course_ids: Iterable[int]
) -> int:
    result = await db.execute(
        delete(CartItem).where(
            CartItem.student_id == student_id,
            CartItem.course_id.in_(list(course_ids)),
        )
    )
    return result.rowcount


async def get_courses(db: AsyncSession, course_ids: Iterable[int]) -> Dict[int, Course]:
    result = await db.execute(select(Course).where(Course.id.in_(list(course_ids))))
    return {course.id: course for course in result.scalars().all()}
