"""
Input Validation - sanitization of values arriving from the API layer.

Every validator returns (is_valid, error_message) so callers can surface
the exact field that failed.
"""

from typing import Any, Tuple, Optional

# =============================================================================
# Constants
# =============================================================================

MAX_SIGNATURE_SIZE = 65
MAX_ADDRESS_SIZE = 20
MAX_AUCTION_ID_LENGTH = 128

MIN_AMOUNT = 0
MAX_AMOUNT = 2**256 - 1
MAX_TIMESTAMP = 2**64 - 1


# =============================================================================
# Validation Functions
# =============================================================================


def validate_integer(
    value: Any,
    name: str,
    min_val: int = MIN_AMOUNT,
    max_val: int = MAX_AMOUNT,
) -> Tuple[bool, str]:
    """
    Validate integer within bounds.

    Args:
        value: Value to validate
        name: Field name for errors
        min_val: Minimum allowed value
        max_val: Maximum allowed value
    """
    if isinstance(value, bool) or not isinstance(value, int):
        return False, f"{name} must be int, got {type(value).__name__}"

    if value < min_val:
        return False, f"{name} must be >= {min_val}, got {value}"

    if value > max_val:
        return False, f"{name} must be <= {max_val}, got {value}"

    return True, ""


def validate_amount(amount: Any, name: str = "amount") -> Tuple[bool, str]:
    """Validate a currency amount in the smallest unit (uint256)."""
    return validate_integer(amount, name, MIN_AMOUNT, MAX_AMOUNT)


def validate_timestamp(value: Any, name: str = "timestamp") -> Tuple[bool, str]:
    """Validate seconds since epoch."""
    return validate_integer(value, name, 0, MAX_TIMESTAMP)


def validate_hex_string(value: Any, name: str, expected_bytes: Optional[int] = None) -> Tuple[bool, str]:
    """
    Validate a hex string (with or without 0x prefix).

    Args:
        value: Value to validate
        name: Field name
        expected_bytes: Expected byte length when decoded
    """
    if not isinstance(value, str):
        return False, f"{name} must be str, got {type(value).__name__}"

    hex_str = value[2:] if value[:2] in ("0x", "0X") else value

    if len(hex_str) % 2 != 0:
        return False, f"{name} has odd length, invalid hex"

    try:
        bytes.fromhex(hex_str)
    except ValueError:
        return False, f"{name} contains invalid hex characters"

    if expected_bytes is not None:
        actual_bytes = len(hex_str) // 2
        if actual_bytes != expected_bytes:
            return False, f"{name} must be {expected_bytes} bytes, got {actual_bytes}"

    return True, ""


def validate_address(address: Any, name: str = "address") -> Tuple[bool, str]:
    """Validate a 0x-prefixed 20-byte address."""
    if not isinstance(address, str) or not address.startswith("0x"):
        return False, f"{name} must be a 0x-prefixed hex string"
    return validate_hex_string(address, name, MAX_ADDRESS_SIZE)


def validate_signature(signature: Any) -> Tuple[bool, str]:
    """Validate a 65-byte hex signature."""
    return validate_hex_string(signature, "signature", MAX_SIGNATURE_SIZE)


def validate_auction_id(auction_id: Any) -> Tuple[bool, str]:
    """Validate an opaque auction identifier."""
    if not isinstance(auction_id, str) or not auction_id:
        return False, "auction_id must be a non-empty string"
    if len(auction_id) > MAX_AUCTION_ID_LENGTH:
        return False, f"auction_id exceeds max length {MAX_AUCTION_ID_LENGTH}"
    return True, ""


__all__ = [
    "validate_integer",
    "validate_amount",
    "validate_timestamp",
    "validate_hex_string",
    "validate_address",
    "validate_signature",
    "validate_auction_id",
    "MAX_SIGNATURE_SIZE",
    "MAX_ADDRESS_SIZE",
    "MAX_AMOUNT",
]
