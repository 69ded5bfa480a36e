from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, Numeric, String, UniqueConstraint

from lms_payments.db.base_class import Base


class Enrollment(Base):
    __tablename__ = "enrollments"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(String(64), nullable=False, index=True)
    course_id = Column(Integer, nullable=False, index=True)
    status = Column(String(16), nullable=False, default="active")
    progress_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    completed_lessons = Column(Integer, nullable=False, default=0)

    payment_id = Column(Integer, nullable=True, index=True)
    payment_amount = Column(Numeric(10, 2), nullable=True)
    payment_currency = Column(String(3), nullable=True)
    enrolled_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("student_id", "course_id", name="uq_enrollments_student_course"),
    )
