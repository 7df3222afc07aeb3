"""
PayHere hashing helpers.

PayHere signs both the checkout form and the notify callback with an
upper-case hex MD5 over concatenated fields, where the merchant secret is
itself replaced by its upper-case hex MD5.
"""
import hashlib
import hmac
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from . import config

TWO_PLACES = Decimal("0.01")


def md5_upper(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest().upper()


def format_amount(amount: Union[Decimal, float, int, str]) -> str:
    """
    Format an amount the way PayHere hashes it: two decimals, no separators.

    Raises:
        ValueError: If ``amount`` is not numeric
    """
    try:
        value = Decimal(str(amount).strip().replace(",", ""))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    return f"{value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP):f}"


def secret_digest(merchant_secret: str = None) -> str:
    if merchant_secret is None:
        merchant_secret = config.PAYHERE_MERCHANT_SECRET
    return md5_upper(merchant_secret)


def checkout_hash(
    order_id: str,
    amount,
    currency: str,
    merchant_id: str = None,
    merchant_secret: str = None,
) -> str:
    """Hash sent with the checkout form: MD5(merchant_id + order_id + amount + currency + MD5(secret))."""
    if merchant_id is None:
        merchant_id = config.PAYHERE_MERCHANT_ID
    return md5_upper(
        merchant_id + order_id + format_amount(amount) + currency + secret_digest(merchant_secret)
    )


def notification_signature(
    merchant_id: str,
    order_id: str,
    amount,
    currency: str,
    status_code: str,
    merchant_secret: str = None,
) -> str:
    """Expected ``md5sig`` of a notify callback."""
    return md5_upper(
        merchant_id
        + order_id
        + format_amount(amount)
        + currency
        + status_code
        + secret_digest(merchant_secret)
    )


def verify_notification_signature(
    merchant_id: str,
    order_id: str,
    amount: str,
    currency: str,
    status_code: str,
    signature: str,
    merchant_secret: str = None,
) -> bool:
    """Check a notify callback's ``md5sig``. Non-numeric amounts never verify."""
    if not signature:
        return False
    try:
        expected = notification_signature(
            merchant_id, order_id, amount, currency, status_code, merchant_secret
        )
    except ValueError:
        return False
    return hmac.compare_digest(expected, signature.strip().upper())
