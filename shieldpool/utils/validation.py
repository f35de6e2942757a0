"""
Input Validation - Security-focused input sanitization.

Provides validation for everything that crosses into the pool:
- Field elements (must be < SNARK scalar field)
- Addresses, compressed keys, ciphertext sizes
- Note values and fee rates

All validators return ``(is_valid, error_message)``; the entry points decide
which error class to raise.
"""

from typing import Any, Optional, Sequence, Tuple

from shieldpool.crypto import FIELD_PRIME

# =============================================================================
# Constants
# =============================================================================

ADDRESS_SIZE = 20
COMPRESSED_KEY_SIZE = 33
NOTE_RANDOM_SIZE = 16
MAX_ARRAY_LENGTH = 256
MAX_MEMO_SIZE = 1024

# Note values are 120-bit
MAX_NOTE_VALUE = 2**120 - 1

BASIS_POINTS = 10000


# =============================================================================
# Validation Functions
# =============================================================================


def validate_bytes(
    data: Any,
    name: str,
    expected_length: Optional[int] = None,
    max_length: Optional[int] = None,
) -> Tuple[bool, str]:
    """
    Validate bytes input.

    Args:
        data: Data to validate
        name: Field name for error messages
        expected_length: Exact expected length
        max_length: Maximum allowed length

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(data, (bytes, bytearray)):
        return False, f"{name} must be bytes, got {type(data).__name__}"

    if expected_length is not None and len(data) != expected_length:
        return False, f"{name} must be {expected_length} bytes, got {len(data)}"

    if max_length is not None and len(data) > max_length:
        return False, f"{name} exceeds max length {max_length}, got {len(data)}"

    return True, ""


def validate_address(address: Any, name: str = "address") -> Tuple[bool, str]:
    """Validate a 20-byte address."""
    return validate_bytes(address, name, expected_length=ADDRESS_SIZE)


def validate_compressed_key(key: Any, name: str = "public_key") -> Tuple[bool, str]:
    """Validate a 33-byte compressed curve point encoding."""
    valid, err = validate_bytes(key, name, expected_length=COMPRESSED_KEY_SIZE)
    if not valid:
        return False, err
    if key[0] not in (2, 3):
        return False, f"{name} has invalid compression prefix"
    return True, ""


def validate_integer(
    value: Any,
    name: str,
    min_val: int = 0,
    max_val: int = FIELD_PRIME - 1,
) -> Tuple[bool, str]:
    """
    Validate integer within bounds.

    Args:
        value: Value to validate
        name: Field name for errors
        min_val: Minimum allowed value
        max_val: Maximum allowed value

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(value, int) or isinstance(value, bool):
        return False, f"{name} must be int, got {type(value).__name__}"

    if value < min_val:
        return False, f"{name} must be >= {min_val}, got {value}"

    if value > max_val:
        return False, f"{name} must be <= {max_val}, got {value}"

    return True, ""


def validate_field_element(value: Any, name: str = "field_element") -> Tuple[bool, str]:
    """Validate a field element (< FIELD_PRIME)."""
    return validate_integer(value, name, 0, FIELD_PRIME - 1)


def validate_field_elements(values: Any, name: str) -> Tuple[bool, str]:
    """Validate a non-empty list of field elements."""
    valid, err = validate_array(values, name)
    if not valid:
        return False, err
    if len(values) == 0:
        return False, f"{name} must not be empty"
    for i, value in enumerate(values):
        valid, err = validate_field_element(value, f"{name}[{i}]")
        if not valid:
            return False, err
    return True, ""


def validate_note_value(value: Any) -> Tuple[bool, str]:
    """Validate a note value (non-zero, 120-bit)."""
    return validate_integer(value, "value", 1, MAX_NOTE_VALUE)


def validate_basis_points(value: Any, name: str = "fee") -> Tuple[bool, str]:
    """Validate a fee rate in basis points."""
    return validate_integer(value, name, 0, BASIS_POINTS)


def validate_array(
    data: Any,
    name: str,
    max_length: int = MAX_ARRAY_LENGTH,
) -> Tuple[bool, str]:
    """
    Validate array/list input.

    Args:
        data: Data to validate
        name: Field name for errors
        max_length: Maximum allowed length

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(data, (list, tuple)):
        return False, f"{name} must be list/tuple, got {type(data).__name__}"

    if len(data) > max_length:
        return False, f"{name} exceeds max length {max_length}, got {len(data)}"

    return True, ""


def validate_unique(values: Sequence[Any], name: str) -> Tuple[bool, str]:
    """Reject repeated entries inside one list."""
    if len(set(values)) != len(values):
        return False, f"{name} contains duplicates"
    return True, ""


def validate_hex_string(value: Any, name: str, expected_bytes: Optional[int] = None) -> Tuple[bool, str]:
    """
    Validate a hex string (with or without 0x prefix).

    Args:
        value: Value to validate
        name: Field name
        expected_bytes: Expected byte length when decoded

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(value, str):
        return False, f"{name} must be str, got {type(value).__name__}"

    hex_str = value[2:] if value.startswith("0x") else value

    if len(hex_str) % 2 != 0:
        return False, f"{name} has odd length, invalid hex"

    try:
        bytes.fromhex(hex_str)
    except ValueError:
        return False, f"{name} contains invalid hex characters"

    if expected_bytes is not None and len(hex_str) // 2 != expected_bytes:
        return False, f"{name} must be {expected_bytes} bytes, got {len(hex_str) // 2}"

    return True, ""


__all__ = [
    "validate_bytes",
    "validate_address",
    "validate_compressed_key",
    "validate_integer",
    "validate_field_element",
    "validate_field_elements",
    "validate_note_value",
    "validate_basis_points",
    "validate_array",
    "validate_unique",
    "validate_hex_string",
    "ADDRESS_SIZE",
    "COMPRESSED_KEY_SIZE",
    "NOTE_RANDOM_SIZE",
    "MAX_NOTE_VALUE",
    "BASIS_POINTS",
]
