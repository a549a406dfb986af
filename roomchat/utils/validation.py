"""
Input Validation - checks on everything a command caller supplies.

All validators run before any network I/O and return
``(is_valid, error_message)`` so callers pick the exception type.
"""

from typing import Any, Tuple

# =============================================================================
# Constants
# =============================================================================

MAX_ROOM_NAME_LENGTH = 256
MAX_MESSAGE_LENGTH = 64 * 1024
MAX_ADDRESS_LENGTH = 1024


# =============================================================================
# Validation Functions
# =============================================================================


def validate_string(
    data: Any,
    name: str,
    max_length: int,
    allow_blank: bool = False,
) -> Tuple[bool, str]:
    """
    Validate a text input.

    Args:
        data: Value to validate
        name: Field name for error messages
        max_length: Maximum allowed length in characters
        allow_blank: Accept empty or whitespace-only strings

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(data, str):
        return False, f"{name} must be a string, got {type(data).__name__}"

    if not allow_blank and not data.strip():
        return False, f"{name} must not be empty"

    if len(data) > max_length:
        return False, f"{name} exceeds max length {max_length}, got {len(data)}"

    if "\x00" in data:
        return False, f"{name} must not contain NUL characters"

    return True, ""


def validate_room_name(room_name: Any, max_length: int = MAX_ROOM_NAME_LENGTH) -> Tuple[bool, str]:
    """Validate a room (topic) name."""
    return validate_string(room_name, "room name", max_length)


def validate_message_content(content: Any, max_length: int = MAX_MESSAGE_LENGTH) -> Tuple[bool, str]:
    """Validate chat message content."""
    return validate_string(content, "message", max_length)


def validate_address_string(addr: Any) -> Tuple[bool, str]:
    """Cheap pre-parse check on a peer address string."""
    ok, err = validate_string(addr, "address", MAX_ADDRESS_LENGTH)
    if not ok:
        return ok, err
    if not addr.startswith("/"):
        return False, "address must start with '/'"
    if any(c.isspace() for c in addr):
        return False, "address must not contain whitespace"
    return True, ""
