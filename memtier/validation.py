"""Input validation helpers for memtier.

Used by the engine, the storage adapters and the CLI for consistent input
sanitization. Every helper raises :class:`~memtier.protocols.ValidationError`.

- ``sanitize_string`` - string validation + control-char stripping
- ``sanitize_number`` - numeric validation + NaN/Infinity rejection
- ``sanitize_list`` - list-of-strings validation
- ``validate_identifier`` - tenant/user/scope ids
- ``validate_custom_metadata`` - the bounded scalar map stored on a memory
"""

import logging
import math
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from memtier.protocols import ValidationError

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 10_000
MAX_IDENTIFIER_LENGTH = 200
MAX_TAGS = 50
MAX_TAG_LENGTH = 100

MAX_CUSTOM_KEYS = 32
MAX_CUSTOM_KEY_LENGTH = 64
MAX_CUSTOM_STRING_LENGTH = 1000

CustomValue = Union[str, int, float, bool, None]

E = TypeVar("E", bound=Enum)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_string(
    value: Any, field_name: str, max_length: int = 1000, required: bool = True
) -> str:
    """Sanitize and validate string inputs.

    Args:
        value: The value to sanitize.
        field_name: Name of the field for error messages.
        max_length: Maximum allowed string length.
        required: If True, empty strings are rejected.

    Returns:
        Sanitized string.

    Raises:
        ValidationError: If validation fails.
    """
    if value is None and not required:
        return ""

    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string, got {type(value).__name__}")

    if required and not value.strip():
        raise ValidationError(f"{field_name} cannot be empty")

    if len(value) > max_length:
        raise ValidationError(
            f"{field_name} too long (max {max_length} characters, got {len(value)})"
        )

    # Remove null bytes and control characters except newlines and tabs
    return _CONTROL_CHARS.sub("", value)


def sanitize_number(
    value: Any,
    field_name: str,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
    default: Optional[float] = None,
) -> float:
    """Validate numeric inputs, rejecting NaN and Infinity.

    Raises:
        ValidationError: If validation fails.
    """
    if value is None:
        if default is not None:
            return default
        raise ValidationError(f"{field_name} is required")

    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number, got bool")

    if not isinstance(value, (int, float)):
        raise ValidationError(f"{field_name} must be a number, got {type(value).__name__}")

    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        raise ValidationError(f"{field_name} must be a finite number, got {value}")

    if min_val is not None and value < min_val:
        raise ValidationError(f"{field_name} must be >= {min_val}, got {value}")

    if max_val is not None and value > max_val:
        raise ValidationError(f"{field_name} must be <= {max_val}, got {value}")

    return float(value)


def sanitize_list(
    value: Any,
    field_name: str,
    item_max_length: int = MAX_TAG_LENGTH,
    max_items: int = MAX_TAGS,
) -> List[str]:
    """Validate and sanitize a list of strings (empty items removed, order kept)."""
    if value is None:
        return []

    if isinstance(value, tuple):
        value = list(value)

    if not isinstance(value, list):
        raise ValidationError(f"{field_name} must be a list, got {type(value).__name__}")

    if len(value) > max_items:
        raise ValidationError(f"{field_name} too many items (max {max_items}, got {len(value)})")

    if any(item is None for item in value):
        raise ValidationError(f"{field_name} must not contain null items")

    sanitized = []
    for i, item in enumerate(value):
        sanitized_item = sanitize_string(
            item, f"{field_name}[{i}]", item_max_length, required=False
        ).strip()
        if sanitized_item and sanitized_item not in sanitized:
            sanitized.append(sanitized_item)

    return sanitized


def validate_identifier(value: Any, field_name: str) -> str:
    """Validate a tenant, user or scope identifier."""
    sanitized = sanitize_string(value, field_name, MAX_IDENTIFIER_LENGTH).strip()
    if not sanitized:
        raise ValidationError(f"{field_name} cannot be empty")
    return sanitized


def coerce_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    """Accept an enum member or its string value."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            pass
    valid = sorted(member.value for member in enum_cls)
    raise ValidationError(f"{field_name} must be one of {valid}, got {value!r}")


def validate_custom_metadata(value: Any) -> Dict[str, CustomValue]:
    """Validate the custom metadata map.

    At most 32 keys; keys are non-empty strings up to 64 chars; values are
    scalars (str up to 1000 chars, int, finite float, bool, None).
    """
    if value is None:
        return {}

    if not isinstance(value, dict):
        raise ValidationError(f"custom metadata must be a mapping, got {type(value).__name__}")

    if len(value) > MAX_CUSTOM_KEYS:
        raise ValidationError(
            f"custom metadata has too many keys (max {MAX_CUSTOM_KEYS}, got {len(value)})"
        )

    validated: Dict[str, CustomValue] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not key.strip():
            raise ValidationError(f"custom metadata keys must be non-empty strings, got {key!r}")
        if len(key) > MAX_CUSTOM_KEY_LENGTH:
            raise ValidationError(
                f"custom metadata key too long (max {MAX_CUSTOM_KEY_LENGTH}): {key[:20]}..."
            )
        if item is None or isinstance(item, bool):
            validated[key] = item
        elif isinstance(item, (int, float)):
            validated[key] = sanitize_number(item, f"custom[{key}]")
            if isinstance(item, int):
                validated[key] = item
        elif isinstance(item, str):
            validated[key] = sanitize_string(
                item, f"custom[{key}]", MAX_CUSTOM_STRING_LENGTH, required=False
            )
        else:
            raise ValidationError(
                f"custom[{key}] must be a str, int, float, bool or None, "
                f"got {type(item).__name__}"
            )

    return validated
