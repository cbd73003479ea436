from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


# Canonical codes mirror the CHECK constraint in `backend/db/migrations/001_init.sql`.
OrderStatus = Annotated[
    Literal["HELD", "ACTIVE", "QUEUED", "COMPLETED", "CANCELLED"],
    BeforeValidator(_to_upper_str),
]


# Payment modes are free-form per store (CASH, CARD, UPI, ...).
# Keep a tight, safe character set so modes are stable identifiers.
PaymentMode = Annotated[
    str,
    BeforeValidator(_to_upper_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[A-Z0-9][A-Z0-9_-]*$"),
]
