"""Environment-driven configuration for the payment service.

Values are read once from the process environment (and ``.env`` through
python-dotenv) and frozen into explicit config objects that are passed to
the gateways at construction time.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


def _parse_operators(raw: str) -> Dict[str, str]:
    # "alice:token1,bob:token2"
    operators = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk or ":" not in chunk:
            continue
        name, token = chunk.split(":", 1)
        if name.strip() and token.strip():
            operators[name.strip()] = token.strip()
    return operators


def _parse_chat_ids(raw: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in raw.replace(" ", "").split(",") if part)


@dataclass(frozen=True)
class StripeConfig:
    secret_key: str
    webhook_secret: str
    success_url: str
    cancel_url: str
    timeout_seconds: float = 15.0
    webhook_tolerance_seconds: int = 300

    @classmethod
    def from_env(cls) -> "StripeConfig":
        return cls(
            secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            success_url=os.getenv(
                "STRIPE_SUCCESS_URL", "http://localhost:8000/api/payments/stripe/success"
            ),
            cancel_url=os.getenv(
                "STRIPE_CANCEL_URL", "http://localhost:8000/api/payments/stripe/cancel"
            ),
            timeout_seconds=float(os.getenv("STRIPE_TIMEOUT_SECONDS", "15")),
            webhook_tolerance_seconds=int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300")),
        )


@dataclass(frozen=True)
class MomoConfig:
    # Personal (manual transfer) account
    payout_account_id: str
    payout_display_name: str
    fx_rate: Decimal
    mode: str = "personal"
    # Business API credentials
    partner_code: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint: str = "https://test-payment.momo.vn/v2/gateway/api/create"
    query_endpoint: str = "https://test-payment.momo.vn/v2/gateway/api/query"
    refund_endpoint: str = "https://test-payment.momo.vn/v2/gateway/api/refund"
    redirect_url: str = ""
    ipn_url: str = ""
    timeout_seconds: float = 15.0
    callback_tolerance_seconds: int = 900
    reference_pattern: str = r"^\d{8,20}$"

    @property
    def is_personal(self) -> bool:
        return self.mode != "business"

    @classmethod
    def from_env(cls) -> "MomoConfig":
        return cls(
            payout_account_id=os.getenv("MOMO_PERSONAL_PHONE", "0123456789"),
            payout_display_name=os.getenv("MOMO_PERSONAL_NAME", "LMS System"),
            fx_rate=Decimal(os.getenv("MOMO_USD_TO_VND_RATE", "24000")),
            mode=os.getenv("MOMO_MODE", "personal"),
            partner_code=os.getenv("MOMO_PARTNER_CODE", ""),
            access_key=os.getenv("MOMO_ACCESS_KEY", ""),
            secret_key=os.getenv("MOMO_SECRET_KEY", ""),
            endpoint=os.getenv("MOMO_ENDPOINT", cls.endpoint),
            query_endpoint=os.getenv("MOMO_QUERY_ENDPOINT", cls.query_endpoint),
            refund_endpoint=os.getenv("MOMO_REFUND_ENDPOINT", cls.refund_endpoint),
            redirect_url=os.getenv("MOMO_REDIRECT_URL", ""),
            ipn_url=os.getenv("MOMO_IPN_URL", ""),
            timeout_seconds=float(os.getenv("MOMO_TIMEOUT_SECONDS", "15")),
            callback_tolerance_seconds=int(os.getenv("MOMO_CALLBACK_TOLERANCE", "900")),
            reference_pattern=os.getenv("MOMO_REFERENCE_PATTERN", cls.reference_pattern),
        )


@dataclass(frozen=True)
class Settings:
    frontend_url: str = "http://localhost:3000"
    payment_ttl_minutes: int = 30
    log_level: str = "INFO"
    operators: Dict[str, str] = field(default_factory=dict)
    telegram_bot_token: str = ""
    operator_chat_ids: Tuple[int, ...] = ()
    stripe: Optional[StripeConfig] = None
    momo: Optional[MomoConfig] = None

    @classmethod
    def from_env(cls) -> "Settings":
        token = (
            os.getenv("TELEGRAM_BOT_TOKEN")
            or os.getenv("BOT_TOKEN")
            or ""
        ).strip().strip("'\"")
        return cls(
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/"),
            payment_ttl_minutes=int(os.getenv("PAYMENT_TTL_MINUTES", "30")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            operators=_parse_operators(os.getenv("PAYMENT_OPERATORS", "")),
            telegram_bot_token=token,
            operator_chat_ids=_parse_chat_ids(os.getenv("OPERATOR_CHAT_IDS", "")),
            stripe=StripeConfig.from_env(),
            momo=MomoConfig.from_env(),
        )


_settings = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
