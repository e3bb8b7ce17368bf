"""Constraint checks for resolved field values."""

import logging
import re
from typing import Any, Optional

from autofill.agents.adapters import is_empty, to_number
from autofill.agents.models import FieldConstraints, FieldType, ValidationResult

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_URL_RE = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE)


def validate_value(
    value: Any,
    constraints: Optional[FieldConstraints],
    field_type: Optional[FieldType] = None,
) -> ValidationResult:
    """Check type, required/empty, enum membership, numeric bounds, then string format."""
    if field_type == FieldType.NUMBER and not is_empty(value) and to_number(value) is None:
        return ValidationResult(is_valid=False, reason=f'Value "{value}" is not a number')

    if constraints is None:
        return ValidationResult(is_valid=True, reason="No constraints to validate")

    if is_empty(value):
        if constraints.required and constraints.enum_options:
            logger.error("Required enum field is empty after synthesis")
            return ValidationResult(
                is_valid=False, reason="Required select field MUST have a value"
            )
        if constraints.required:
            return ValidationResult(is_valid=False, reason="Required field is empty")
        return ValidationResult(
            is_valid=True, reason="Empty value allowed for non-required field"
        )

    if constraints.enum_options and value not in constraints.enum_options:
        return ValidationResult(
            is_valid=False,
            reason=(
                f'Value "{value}" not in allowed options: '
                f"{', '.join(constraints.enum_options)}"
            ),
        )

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if constraints.min is not None and value < constraints.min:
            return ValidationResult(
                is_valid=False, reason=f"Value {value} below minimum {constraints.min:g}"
            )
        if constraints.max is not None and value > constraints.max:
            return ValidationResult(
                is_valid=False, reason=f"Value {value} above maximum {constraints.max:g}"
            )

    if isinstance(value, str):
        if constraints.pattern and not re.search(constraints.pattern, value):
            return ValidationResult(
                is_valid=False, reason=f'Value "{value}" does not match required pattern'
            )
        if constraints.format == "email" and not _EMAIL_RE.match(value):
            return ValidationResult(
                is_valid=False, reason=f'Value "{value}" is not a valid email address'
            )
        if constraints.format == "url" and not _URL_RE.match(value):
            return ValidationResult(
                is_valid=False, reason=f'Value "{value}" is not a valid URL'
            )

    return ValidationResult(is_valid=True, reason="All constraints satisfied")
