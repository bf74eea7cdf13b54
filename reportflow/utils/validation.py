"""
Input validation utilities for the report request boundary.

Provides reusable validation functions for identifiers, requester names and
free-form extension parameters so that malformed input is rejected before
any event is published.
"""

import re
from typing import Any


class ValidationError(ValueError):
    """Raised when input validation fails."""
    pass


_IDENTIFIER_PATTERN = re.compile(r'^[a-zA-Z0-9_\-\.]+$')
_EXTENSION_KEY_PATTERN = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_\-]*$')

MAX_EXTENSION_KEYS = 50
MAX_EXTENSION_VALUE_LENGTH = 1024


def validate_identifier(value: str, field_name: str = "identifier") -> str:
    """
    Validate an opaque identifier (request id, subject id, user id).

    Identifiers must be non-empty strings containing only alphanumeric
    characters, hyphens, underscores, and dots.

    Args:
        value: The identifier to validate
        field_name: Name of the field (for error messages)

    Returns:
        The validated identifier (stripped of whitespace)

    Raises:
        ValidationError: If validation fails

    Examples:
        >>> validate_identifier("tt1234567")
        'tt1234567'
        >>> validate_identifier("user_456")
        'user_456'
        >>> validate_identifier("invalid id!")  # doctest: +SKIP
        ValidationError: identifier contains invalid characters
    """
    if not value or not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a non-empty string")

    value = value.strip()

    if not value:
        raise ValidationError(f"{field_name} cannot be empty or whitespace-only")

    if not _IDENTIFIER_PATTERN.match(value):
        raise ValidationError(
            f"{field_name} contains invalid characters. "
            "Only alphanumeric, hyphens, underscores, and dots are allowed."
        )

    # Prevent excessively long IDs (DOS protection)
    if len(value) > 255:
        raise ValidationError(f"{field_name} exceeds maximum length of 255 characters")

    return value


def validate_subject_id(subject_id: str, field_name: str = "subject_id") -> str:
    """
    Validate a report subject (movie or user identifier).

    Subject IDs follow the same rules as any other identifier; whether the
    subject actually exists is only known once the provider is asked.
    """
    return validate_identifier(subject_id, field_name)


def validate_requested_by(requested_by: str, field_name: str = "requested_by") -> str:
    """
    Validate the name of the principal submitting a report request.

    Args:
        requested_by: Requester name or email
        field_name: Name of the field (for error messages)

    Returns:
        The validated requester (stripped of whitespace)

    Raises:
        ValidationError: If validation fails
    """
    if not requested_by or not isinstance(requested_by, str):
        raise ValidationError(f"{field_name} must be a non-empty string")

    requested_by = requested_by.strip()

    if not requested_by:
        raise ValidationError(f"{field_name} cannot be empty or whitespace-only")

    if len(requested_by) > 320:
        raise ValidationError(f"{field_name} exceeds maximum length of 320 characters")

    if any(ch in requested_by for ch in ("\x00", "\n", "\r")):
        raise ValidationError(f"{field_name} contains control characters")

    return requested_by


def validate_extensions(extensions: Any, field_name: str = "extensions") -> dict[str, Any]:
    """
    Validate a flat key-value mapping of extension parameters.

    Values must be scalars (str, int, float, bool); nested structures are
    rejected so the mapping stays opaque but well-formed on the bus.

    Args:
        extensions: Mapping to validate
        field_name: Name of the field (for error messages)

    Returns:
        The validated mapping

    Raises:
        ValidationError: If validation fails

    Examples:
        >>> validate_extensions({"locale": "en", "top": 5})
        {'locale': 'en', 'top': 5}
        >>> validate_extensions({"nested": {"a": 1}})  # doctest: +SKIP
        ValidationError: extensions['nested'] must be a scalar value
    """
    if extensions is None:
        return {}

    if not isinstance(extensions, dict):
        raise ValidationError(f"{field_name} must be a mapping")

    if len(extensions) > MAX_EXTENSION_KEYS:
        raise ValidationError(
            f"{field_name} exceeds maximum of {MAX_EXTENSION_KEYS} keys"
        )

    for key, value in extensions.items():
        if not isinstance(key, str) or not _EXTENSION_KEY_PATTERN.match(key):
            raise ValidationError(f"{field_name} key {key!r} is not a valid name")
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise ValidationError(f"{field_name}[{key!r}] must be a scalar value")
        if isinstance(value, str) and len(value) > MAX_EXTENSION_VALUE_LENGTH:
            raise ValidationError(
                f"{field_name}[{key!r}] exceeds maximum length of {MAX_EXTENSION_VALUE_LENGTH} characters"
            )

    return extensions


def validate_limit(limit: int, field_name: str = "limit", max_limit: int = 10000) -> int:
    """
    Validate a limit parameter for queries.

    Args:
        limit: The limit value to validate
        field_name: Name of the field (for error messages)
        max_limit: Maximum allowed limit value

    Returns:
        The validated limit value

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(limit, int) or isinstance(limit, bool):
        raise ValidationError(f"{field_name} must be an integer, got {type(limit).__name__}")

    if limit <= 0:
        raise ValidationError(f"{field_name} must be a positive integer, got {limit}")

    if limit > max_limit:
        raise ValidationError(f"{field_name} exceeds maximum of {max_limit}")

    return limit

