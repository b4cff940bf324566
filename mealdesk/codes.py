"""Human-readable identifiers for customers, orders and invoices.

Each generator mixes a clock component with a per-process sequence that starts
at a random offset. Two codes from the same process can only repeat once the
sequence wraps, and ``allocate_code`` checks the database before handing a code
out; the unique constraints on the columns are the last line of defence.
"""
import itertools
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from mealdesk.errors import ConflictError

ALPHABET = string.digits + string.ascii_uppercase

_customer_sequence = itertools.count(secrets.randbelow(36**3))
_order_sequence = itertools.count(secrets.randbelow(36**2))
_invoice_sequence = itertools.count(secrets.randbelow(10**4))


def _base36(value: int, width: int) -> str:
    chars = []
    for _ in range(width):
        value, remainder = divmod(value, 36)
        chars.append(ALPHABET[remainder])
    return "".join(reversed(chars))


def generate_customer_code() -> str:
    """``CUS`` + last 6 digits of the epoch millis + 3 base36 chars."""
    stamp = str(int(time.time() * 1000))[-6:]
    return f"CUS{stamp}{_base36(next(_customer_sequence) % 36**3, 3)}"


def generate_order_number() -> str:
    """``ORD`` + last 8 digits of the epoch millis + 2 base36 chars."""
    stamp = str(int(time.time() * 1000))[-8:]
    return f"ORD{stamp}{_base36(next(_order_sequence) % 36**2, 2)}"


def generate_invoice_number() -> str:
    """``INV`` + ``YYMMDD`` + 4 sequence digits: always ``INV`` followed by 10 digits."""
    stamp = datetime.now(timezone.utc).strftime("%y%m%d")
    return f"INV{stamp}{next(_invoice_sequence) % 10**4:04d}"


def allocate_code(db: Session, column, generator: Callable[[], str], max_attempts: int = 5) -> str:
    for _ in range(max_attempts):
        code = generator()
        taken = db.execute(select(column).where(column == code).limit(1)).first()
        if taken is None:
            return code
    raise ConflictError(f"Could not allocate a unique {column.key} after {max_attempts} attempts")
