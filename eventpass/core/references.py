"""
Human-shareable reference generation.

Format: PREFIX + base36(epoch millis) + 8 random hex chars, upper-cased,
e.g. BKM2X8Q1ZA9F3C01B7. Alphanumeric only so it survives being read
aloud, typed into a form, or embedded in a URL.
"""

import secrets
import string
import time

_BASE36 = string.digits + string.ascii_uppercase


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_reference(prefix: str) -> str:
    timestamp = _base36(int(time.time() * 1000))
    return f"{prefix}{timestamp}{secrets.token_hex(4)}".upper()


def generate_booking_reference() -> str:
    return generate_reference("BK")


def generate_payment_reference() -> str:
    return generate_reference("PAY")
