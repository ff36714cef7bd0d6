from __future__ import annotations

import hashlib
import hmac
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping

from .exceptions import ValidationError

_CENT = Decimal("0.01")


def _format_value(value: Any) -> str:
    if value is None:
        raise ValidationError("pay_sign parameters must not be None")
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def canonicalize(params: Mapping[str, Any]) -> str:
    """k=v pairs sorted by key and joined with '&', values used verbatim."""
    return "&".join(f"{key}={_format_value(params[key])}" for key in sorted(params))


def pay_sign(params: Mapping[str, Any], secret_key: str) -> str:
    """
    Aggregator signature: MD5 over `canonicalize(params) + "&key=" + secret_key`, uppercase hex.

    The aggregator recomputes this on its side, so the canonical string must
    match byte for byte: no URL encoding and no trailing separator.
    """

    if not str(secret_key or ""):
        raise ValidationError("aggregator secret key is missing")
    payload = f"{canonicalize(params)}&key={secret_key}"
    return hashlib.md5(payload.encode("utf-8")).hexdigest().upper()


def verify_pay_sign(params: Mapping[str, Any], secret_key: str, signature: str) -> bool:
    provided = str(signature or "").strip().upper()
    if not provided:
        return False
    return hmac.compare_digest(pay_sign(params, secret_key), provided)


def signatures_match(expected: str | None, provided: str | None) -> bool:
    left = str(expected or "").strip().upper()
    right = str(provided or "").strip().upper()
    if not left or not right:
        return False
    return hmac.compare_digest(left, right)


def format_yuan(amount_cents: int) -> str:
    """120 -> "1.20"."""
    return str((Decimal(int(amount_cents)) / 100).quantize(_CENT))


def parse_yuan(value: Any) -> int:
    """"1.20" -> 120; rejects negatives and sub-cent precision."""
    raw = str(value if value is not None else "").strip()
    if not raw:
        raise ValidationError("money is missing")
    try:
        amount = Decimal(raw)
    except InvalidOperation as exc:
        raise ValidationError(f"money is not a number: {raw}") from exc
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"money is invalid: {raw}")
    if amount.quantize(_CENT, rounding=ROUND_HALF_UP) != amount:
        raise ValidationError(f"money has more than two decimals: {raw}")
    return int((amount * 100).to_integral_value())
