# lms_payments/models/payment.py
import enum
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from lms_payments.db.base_class import Base


class PaymentMethod(str, enum.Enum):
    STRIPE = "stripe"
    MOMO = "momo"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PENDING_VERIFICATION = "pending_verification"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Statuses a callback may still act on.
OPEN_STATUSES = (
    PaymentStatus.PENDING,
    PaymentStatus.PROCESSING,
    PaymentStatus.PENDING_VERIFICATION,
)

TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentStatus.PROCESSING,
        PaymentStatus.PENDING_VERIFICATION,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.PROCESSING: {
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.PENDING_VERIFICATION: {
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}


def allowed_sources(target: PaymentStatus):
    """Return the statuses from which ``target`` can be reached."""
    return tuple(src for src, targets in TRANSITIONS.items() if target in targets)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    # Externally visible correlation key, never reassigned
    order_code = Column(String(32), nullable=False, unique=True, index=True)
    student_id = Column(String(64), nullable=False, index=True)

    payment_method = Column(String(16), nullable=False)
    status = Column(String(32), nullable=False, default=PaymentStatus.PENDING.value, index=True)

    total_amount = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    final_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    coupon_code = Column(String(64), nullable=True)
    description = Column(Text, nullable=True)

    gateway_transaction_id = Column(String(255), nullable=True, index=True)
    gateway_order_code = Column(String(255), nullable=True)
    # Last gateway payload as JSON text
    gateway_response = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)

    # Operator attestation for manual transfers
    verified_by = Column(String(64), nullable=True)
    verified_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    expired_at = Column(DateTime, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    items = relationship(
        "PaymentItem",
        back_populates="payment",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("final_amount >= 0", name="ck_payments_final_amount_non_negative"),
        CheckConstraint("discount_amount >= 0", name="ck_payments_discount_non_negative"),
        Index("ix_payments_student_status", "student_id", "status"),
    )

    def is_expired(self, now: datetime) -> bool:
        return self.status == PaymentStatus.PENDING.value and self.expired_at <= now

    def __repr__(self) -> str:
        return f"<Payment {self.order_code} {self.status} {self.final_amount} {self.currency}>"


class PaymentItem(Base):
    __tablename__ = "payment_items"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(
        Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    course_id = Column(Integer, nullable=False, index=True)

    price = Column(Numeric(10, 2), nullable=False)
    original_price = Column(Numeric(10, 2), nullable=True)
    discount_amount = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")

    # Snapshot at purchase time, not kept in sync with the course
    course_title = Column(Text, nullable=True)
    course_thumbnail = Column(Text, nullable=True)

    payment = relationship("Payment", back_populates="items")
