"""
Enum Utilities for VARCHAR-based Status Fields

• Database: VARCHAR(50), not a native ENUM type
• SQLAlchemy: String(50) with Mapped[str]
• Pydantic: Python Enum for API validation
• Case: all enum values stored in UPPERCASE

Inputs are accepted case-insensitively (``"delivered"`` -> ``"DELIVERED"``)
through normalize_to_uppercase().
"""

from enum import Enum
from typing import Any, Set, Type


def get_enum_value(value: Any) -> str:
    """
    Safely get string value from an enum or string.

    Examples:
        >>> get_enum_value(OrderStatus.PACKED)
        'PACKED'
        >>> get_enum_value("PACKED")
        'PACKED'
    """
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    return str(value)


def enum_values(enum_class: Type[Enum]) -> list:
    """Get all values from an enum class."""
    return [e.value for e in enum_class]


def enum_comment(enum_class: Type[Enum]) -> str:
    """Comma-separated valid values, for VARCHAR column comments."""
    return ", ".join(enum_values(enum_class))


def normalize_to_uppercase(value: Any, valid_values: Set[str]) -> Any:
    """
    Normalize a string value to UPPERCASE if it's a valid enum value.

    Unknown values are returned as-is so Pydantic raises the validation error.

    Examples:
        >>> normalize_to_uppercase('pending', {'PENDING', 'ACTIVE'})
        'PENDING'
        >>> normalize_to_uppercase('invalid', {'PENDING', 'ACTIVE'})
        'invalid'
    """
    if value is None:
        return value
    if isinstance(value, str):
        upper_v = value.strip().upper()
        if upper_v in valid_values:
            return upper_v
    return value
