"""Enrollment store operations used by checkout and reconciliation."""

from typing import Dict, Iterable, List, Set

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lms_payments.models.enrollment import Enrollment
from lms_payments.models.payment import PaymentItem

ACTIVE = "active"
REFUNDED = "refunded"


async def _enrollments_by_course(
    db: AsyncSession, student_id: str, course_ids: List[int]
) -> Dict[int, Enrollment]:
    if not course_ids:
        return {}
    result = await db.execute(
        select(Enrollment).where(
            Enrollment.student_id == student_id,
            Enrollment.course_id.in_(course_ids),
        )
        .execution_options(populate_existing=True)
    )
    return {enrollment.course_id: enrollment for enrollment in result.scalars().all()}


async def enrolled_course_ids(
    db: AsyncSession, student_id: str, course_ids: Iterable[int]
) -> Set[int]:
    """Courses in ``course_ids`` the student currently has access to.

    Refunded enrollments do not count; the course can be bought again.
    """
    course_ids = list(course_ids)
    if not course_ids:
        return set()
    result = await db.execute(
        select(Enrollment.course_id).where(
            Enrollment.student_id == student_id,
            Enrollment.course_id.in_(course_ids),
            Enrollment.status == ACTIVE,
        )
    )
    return set(result.scalars().all())


async def is_enrolled(db: AsyncSession, student_id: str, course_id: int) -> bool:
    return course_id in await enrolled_course_ids(db, student_id, [course_id])


async def grant_enrollments(
    db: AsyncSession, student_id: str, items: Iterable[PaymentItem], payment_id: int
) -> List[Enrollment]:
    """Create or reactivate the enrollments for ``items``.

    Active enrollments are skipped. A refunded one is handed back to the
    student under the new payment, keeping its progress. The caller owns
    the transaction: nothing is committed here.
    """
    items = list(items)
    existing = await _enrollments_by_course(db, student_id, [item.course_id for item in items])

    granted = []
    for item in items:
        enrollment = existing.get(item.course_id)
        if enrollment is not None and enrollment.status == ACTIVE:
            continue
        if enrollment is None:
            enrollment = Enrollment(
                student_id=student_id,
                course_id=item.course_id,
                progress_percentage=0,
                completed_lessons=0,
            )
            db.add(enrollment)
            # Guards against the same course appearing twice in one payment
            existing[item.course_id] = enrollment
        enrollment.status = ACTIVE
        enrollment.payment_id = payment_id
        enrollment.payment_amount = item.price
        enrollment.payment_currency = item.currency
        granted.append(enrollment)

    if granted:
        await db.flush()
    return granted


async def mark_refunded(db: AsyncSession, payment_id: int) -> int:
    result = await db.execute(
        update(Enrollment)
        .where(Enrollment.payment_id == payment_id, Enrollment.status == ACTIVE)
        .values(status=REFUNDED)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
