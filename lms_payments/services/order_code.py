"""Order code generation.

Codes look like ``LMS1734567890123K7Q2ZP4M``: a fixed prefix, the creation
time in milliseconds and eight random base-36 characters. The unique index
on ``payments.order_code`` is the final arbiter; callers retry on collision.
"""

import secrets
import string
import time

ORDER_CODE_PREFIX = "LMS"
SUFFIX_LENGTH = 8
_ALPHABET = string.digits + string.ascii_uppercase


def generate_order_code() -> str:
    timestamp = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"{ORDER_CODE_PREFIX}{timestamp}{suffix}"
