"""Maps each payment method to its configured gateway adapter."""

from typing import Dict

from lms_payments.config import Settings
from lms_payments.gateways.base import Gateway
from lms_payments.gateways.momo import MomoGateway
from lms_payments.gateways.stripe_gateway import StripeGateway
from lms_payments.models.payment import PaymentMethod
from lms_payments.services.errors import CheckoutError

GatewayRegistry = Dict[PaymentMethod, Gateway]


def build_gateways(settings: Settings) -> GatewayRegistry:
    gateways = {}
    if settings.stripe is not None:
        gateways[PaymentMethod.STRIPE] = StripeGateway(settings.stripe)
    if settings.momo is not None:
        gateways[PaymentMethod.MOMO] = MomoGateway(settings.momo)
    return gateways


def resolve_gateway(gateways: GatewayRegistry, method) -> Gateway:
    try:
        method = PaymentMethod(method)
    except ValueError:
        raise CheckoutError(f"Unsupported payment method: {method}")
    gateway = gateways.get(method)
    if gateway is None:
        raise CheckoutError(f"Payment method {method.value} is not available")
    return gateway
