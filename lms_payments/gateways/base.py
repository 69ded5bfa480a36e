"""Shared types for payment gateway adapters.

Gateways are plain classes that satisfy :class:`Gateway`; the registry maps
each :class:`PaymentMethod` to one instance. The reconciliation engine only
ever sees :class:`Verified` or :class:`VerificationRejected`, never a raw
provider payload.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Mapping, Optional, Protocol, Union

from lms_payments.models.payment import Payment, PaymentMethod, PaymentStatus

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({"VND", "JPY", "KRW"})


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a decimal amount into the integer unit the gateway expects."""
    amount = Decimal(amount)
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class RawCallback:
    """An unverified notification exactly as it reached the ingress."""

    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PayableIntent:
    url: str
    gateway_reference: Optional[str] = None
    qr_payload: Optional[str] = None
    instructions: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Verified:
    """A callback whose authenticity has been established.

    ``outcome`` is the status the gateway asserts; ``amount`` is in gateway
    units (see ``Gateway.expected_amount``) or ``None`` when the provider did
    not report one.
    """

    order_code: str
    outcome: PaymentStatus
    amount: Optional[int] = None
    transaction_id: Optional[str] = None
    gateway_reference: Optional[str] = None
    message: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None

    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class VerificationRejected:
    reason: str
    order_code: Optional[str] = None

    def __bool__(self) -> bool:
        return False


VerificationResult = Union[Verified, VerificationRejected]


class Gateway(Protocol):
    method: PaymentMethod

    def supports_currency(self, currency: str) -> bool:
        ...

    def expected_amount(self, payment: Payment) -> int:
        ...

    async def create_payable(self, payment: Payment) -> PayableIntent:
        ...

    async def verify_callback(self, callback: RawCallback) -> VerificationResult:
        ...

    async def query_payment(self, payment: Payment) -> Dict[str, Any]:
        ...

    async def refund_payment(
        self, payment: Payment, amount: Optional[Decimal] = None, reason: str = ""
    ) -> Dict[str, Any]:
        ...
