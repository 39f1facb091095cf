"""
Utility helpers for the MultiWallet SDK.
"""
import urllib.parse
from decimal import Decimal
from typing import Any


def format_units(raw_amount: int, decimals: int) -> str:
    """
    Convert an integer amount of base units into a decimal string.

    Args:
        raw_amount: Amount in the smallest unit (wei, lamports, ...)
        decimals: Decimal precision of the currency

    Returns:
        Plain decimal string without exponent, e.g. ``"1.5"`` or ``"0"``

    Raises:
        ValueError: If the amount is negative
    """
    if raw_amount < 0:
        raise ValueError(f"Balance cannot be negative: {raw_amount}")
    value = Decimal(raw_amount).scaleb(-decimals)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def is_local_url(url: str) -> bool:
    """True for localhost / 127.0.0.1 URLs, with or without a port"""
    parsed = urllib.parse.urlparse(url)
    host = parsed.netloc.split(':')[0] if parsed.netloc else ''
    return host in ('localhost', '127.0.0.1')


def validate_rpc_url(url: str, name: str = "rpc_url") -> str:
    """
    Ensure an RPC URL uses https unless it points at localhost.

    Raises:
        ValueError: If the URL is not acceptable
    """
    parsed = urllib.parse.urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"{name} is not a valid URL: {url!r}")
    if parsed.scheme != 'https' and not is_local_url(url):
        raise ValueError(f"{name} must use https:// for security (got: {parsed.scheme}://)")
    return url


def backoff_delay(attempt: int, backoff_factor: float) -> float:
    """Exponential backoff delay before retry number ``attempt`` (1-based)"""
    return backoff_factor * (2 ** (attempt - 1))


def redact(value: Any, keep: int = 8) -> str:
    """Shorten a signature or signed payload for logging"""
    text = str(value)
    if len(text) <= keep:
        return text
    return f"{text[:keep]}…[{len(text)} chars]"


def parse_quantity(value: Any) -> int:
    """Parse a JSON-RPC quantity, either a hex string or an integer"""
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise ValueError(f"Cannot parse quantity: {value!r}")
