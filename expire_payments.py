"""Cancel pending payments whose deadline has passed.

Meant for cron; a pending payment past its deadline is already treated as
void by every reader, this only makes reports reflect it.
"""

import asyncio
import logging

from lms_payments.db.session import SessionLocal
from lms_payments.services.payment_service import expire_stale_payments


async def main() -> None:
    async with SessionLocal() as db:
        expired = await expire_stale_payments(db)
    print(f"Expired payments: {expired}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
