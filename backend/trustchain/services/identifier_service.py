# Overview: Service-layer generation of order identifiers and delivery codes.

"""
Identifier Service

TRACKING IDS: "TRK-YYYYMMDD-XXXXXX", human readable, globally unique.
Uniqueness is enforced by the unique index on orders.tracking_id; callers
retry with a fresh suffix when an insert collides.

DELIVERY OTP: 4 decimal digits drawn from a CSPRNG. Never derived from
order data, never logged.

POLICY NUMBERS: "POL-YYYYMMDD-XXXXXXXX" for shipment insurance.
"""

import hmac
import secrets

from trustchain.time_utils import utcnow


# Unambiguous uppercase alphabet (no 0/O, 1/I/L)
SUFFIX_ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"
TRACKING_PREFIX = "TRK"
POLICY_PREFIX = "POL"
OTP_LENGTH = 4


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(SUFFIX_ALPHABET) for _ in range(length))


def generate_tracking_id(now=None) -> str:
    now = now or utcnow()
    return f"{TRACKING_PREFIX}-{now:%Y%m%d}-{_random_suffix(6)}"


def generate_policy_number(now=None) -> str:
    now = now or utcnow()
    return f"{POLICY_PREFIX}-{now:%Y%m%d}-{_random_suffix(8)}"


def generate_delivery_otp() -> str:
    """Uniform 4-digit code (0000-9999), leading zeros preserved."""
    return f"{secrets.randbelow(10 ** OTP_LENGTH):0{OTP_LENGTH}d}"


def otp_matches(expected: str, submitted: str) -> bool:
    """Constant-time comparison of the stored and submitted codes."""
    return hmac.compare_digest(str(expected).encode(), str(submitted).encode())
