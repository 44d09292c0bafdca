# identifiers.py
import logging
import secrets
import time

from errors import DuplicateReference

logger = logging.getLogger(__name__)

BOOKING_PREFIX = "TKT"
TRANSACTION_PREFIX = "TXN"


def _now_ms() -> int:
    return int(time.time() * 1000)


def booking_code(prefix: str = BOOKING_PREFIX) -> str:
    # prefix + last 6 digits of the ms clock + 3 random bytes as hex, e.g. TKT482913A1B2C3
    return prefix + str(_now_ms())[-6:] + secrets.token_hex(3).upper()


def transaction_code(prefix: str = TRANSACTION_PREFIX) -> str:
    # prefix + full ms clock + 4 random bytes as hex
    return prefix + str(_now_ms()) + secrets.token_hex(4).upper()


def generate_unique_code(prefix, exists, make_code=booking_code, max_attempts=5) -> str:
    """
    Draw codes until ``exists(code)`` reports no collision.

    Only a confirmed duplicate triggers a new draw. An error raised by
    ``exists`` itself propagates unchanged. After ``max_attempts``
    duplicates, DuplicateReference is raised. The unique constraint at
    insert time remains the authoritative guard.
    """
    for attempt in range(1, max_attempts + 1):
        code = make_code(prefix)
        if not exists(code):
            return code
        logger.warning("Identifier collision on %s (attempt %d/%d)", code, attempt, max_attempts)

    raise DuplicateReference()
