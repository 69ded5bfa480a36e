from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from lms_payments.models.payment import PaymentMethod


class CheckoutRequest(BaseModel):
    payment_method: PaymentMethod
    coupon_code: Optional[str] = Field(default=None, max_length=64)
    description: Optional[str] = Field(default=None, max_length=500)


class BuyNowRequest(CheckoutRequest):
    course_ids: List[int] = Field(min_length=1)


class ManualVerificationRequest(BaseModel):
    transaction_ref: str = Field(min_length=1, max_length=64)


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: str = Field(default="", max_length=500)
