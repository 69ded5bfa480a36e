"""Operator bot for manual MoMo transfers.

Commands (accepted only from chats listed in OPERATOR_CHAT_IDS):

/pending                    list MoMo payments waiting for a transfer check
/verify <order> <reference> attest a transfer with its MoMo transaction number
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Sequence

from telegram import Update
from telegram.ext import ApplicationBuilder, CommandHandler, ContextTypes

from lms_payments.config import get_settings
from lms_payments.db.session import SessionLocal
from lms_payments.gateways.registry import build_gateways, resolve_gateway
from lms_payments.models.payment import PaymentMethod, PaymentStatus
from lms_payments.services import payment_service, reconciliation
from lms_payments.services.errors import PaymentError

logger = logging.getLogger(__name__)

PENDING_LIMIT = 20


def _load_bot_token(settings) -> str:
    token = settings.telegram_bot_token
    if not token:
        raise RuntimeError(
            "Telegram bot token is missing. Set TELEGRAM_BOT_TOKEN in the environment or .env"
        )
    # BotFather tokens look like '<digits>:<rest>'
    if ":" not in token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN has an invalid format, check it without quotes.")
    return token


def is_operator_chat(chat_id: int, settings=None) -> bool:
    settings = settings or get_settings()
    return chat_id in settings.operator_chat_ids


def operator_name(update: Update) -> str:
    user = update.effective_user
    if user is None:
        return f"telegram:{update.effective_chat.id}"
    return f"telegram:{user.username or user.id}"


async def pending_report(db, gateway) -> str:
    lines: List[str] = []
    now = datetime.utcnow()
    for status in (PaymentStatus.PENDING_VERIFICATION, PaymentStatus.PENDING):
        payments, total = await payment_service.list_payments(
            db, status=status.value, method=PaymentMethod.MOMO.value, limit=PENDING_LIMIT
        )
        if not payments:
            continue
        lines.append(f"{status.value} ({total}):")
        for payment in payments:
            expired = " [expired]" if payment.is_expired(now) else ""
            lines.append(
                f"  {payment.order_code}  {gateway.expected_amount(payment):,} VND"
                f"  student {payment.student_id}{expired}"
            )
    return "\n".join(lines) if lines else "No MoMo payments are waiting."


async def verify_from_command(db, gateway, args: Sequence[str], operator: str) -> str:
    if len(args) != 2:
        return "Usage: /verify <order_code> <transaction_ref>"
    order_code, transaction_ref = args
    try:
        outcome = await reconciliation.verify_manual_payment(
            db, gateway, order_code, transaction_ref, operator
        )
    except PaymentError as exc:
        return f"❌ {order_code}: {exc.detail}"

    if outcome.succeeded and outcome.applied:
        return f"✅ {order_code} completed, {outcome.enrollments_created} enrollment(s) granted"
    if outcome.succeeded:
        return f"ℹ️ {order_code} was already completed"
    return f"⚠️ {order_code} is {outcome.status}: {outcome.reason or 'no reason'}"


async def pending(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not is_operator_chat(update.effective_chat.id):
        return
    gateway = resolve_gateway(context.bot_data["gateways"], PaymentMethod.MOMO)
    async with SessionLocal() as db:
        text = await pending_report(db, gateway)
    await update.message.reply_text(text)


async def verify(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not is_operator_chat(update.effective_chat.id):
        logger.warning("Ignored /verify from chat %s", update.effective_chat.id)
        return
    gateway = resolve_gateway(context.bot_data["gateways"], PaymentMethod.MOMO)
    async with SessionLocal() as db:
        text = await verify_from_command(db, gateway, context.args or [], operator_name(update))
    await update.message.reply_text(text)


async def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    app = ApplicationBuilder().token(_load_bot_token(settings)).build()
    app.bot_data["gateways"] = build_gateways(settings)
    app.add_handler(CommandHandler("pending", pending))
    app.add_handler(CommandHandler("verify", verify))

    await app.initialize()
    await app.start()
    await app.updater.start_polling()
    logger.info("Operator bot started, waiting for commands")
    await asyncio.Event().wait()


if __name__ == "__main__":
    asyncio.run(main())
