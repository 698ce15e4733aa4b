"""Model-level validation utilities.

Used from ``@validates`` hooks so invalid values are rejected no matter which
route or service writes them.
"""

from decimal import Decimal


def non_negative(key: str, value):
    """Validate that a numeric value is >= 0."""
    if value is not None:
        v = Decimal(str(value)) if not isinstance(value, Decimal) else value
        if v < 0:
            raise ValueError(f"{key} cannot be negative, got {value}")
    return value


def positive(key: str, value):
    """Validate that a numeric value is > 0."""
    if value is not None:
        v = Decimal(str(value)) if not isinstance(value, Decimal) else value
        if v <= 0:
            raise ValueError(f"{key} must be positive, got {value}")
    return value


def percentage(key: str, value):
    """Validate that a value is between 0 and 100 inclusive."""
    if value is not None:
        v = float(value)
        if v < 0 or v > 100:
            raise ValueError(f"{key} must be between 0 and 100, got {value}")
    return value


def rating_score(key: str, value):
    """Validate that a rating value is between 0 and 5."""
    if value is not None:
        v = float(value)
        if v < 0 or v > 5:
            raise ValueError(f"{key} must be between 0 and 5, got {value}")
    return value


def latitude(key: str, value):
    if value is not None and not -90 <= float(value) <= 90:
        raise ValueError(f"{key} must be between -90 and 90, got {value}")
    return value


def longitude(key: str, value):
    if value is not None and not -180 <= float(value) <= 180:
        raise ValueError(f"{key} must be between -180 and 180, got {value}")
    return value


def validate_list(key: str, value):
    """Validate that a JSON column value is a list (or None)."""
    if value is not None and not isinstance(value, list):
        raise ValueError(f"{key} must be a list, got {type(value).__name__}")
    return value