"""Validation service for destination attributes."""

import logging
from typing import Any, Callable, Dict, List

from ..exceptions import DestinationValidationError
from ..models.schema import EntitySchema

logger = logging.getLogger(__name__)


class RecordValidator:
    """
    Validator for destination attributes before insert.

    Supports:
    - Required column validation
    - Max length validation
    - Custom validation rules
    """

    def __init__(self):
        """Initialize the validator."""
        self._custom_validators: Dict[str, List[Callable[[Dict[str, Any]], List[str]]]] = {}

    def register_validator(self, table: str, func: Callable[[Dict[str, Any]], List[str]]) -> None:
        """Register a custom validation function for a destination table."""
        self._custom_validators.setdefault(table, []).append(func)

    def validate(self, attributes: Dict[str, Any], schema: EntitySchema) -> List[str]:
        """
        Validate attributes against an entity schema.

        Returns:
            List of validation error messages
        """
        errors = []

        for column in schema.required_columns:
            value = attributes.get(column)
            if value is None or (isinstance(value, str) and not value.strip()):
                errors.append(f"{column} is required")

        for column, max_length in schema.max_lengths.items():
            value = attributes.get(column)
            if isinstance(value, str) and len(value) > max_length:
                errors.append(f"{column} exceeds max length of {max_length} ({len(value)})")

        for func in self._custom_validators.get(schema.table, []):
            errors.extend(func(attributes))

        return errors

    def check(self, attributes: Dict[str, Any], schema: EntitySchema) -> None:
        """Raise DestinationValidationError when attributes are invalid."""
        errors = self.validate(attributes, schema)
        if errors:
            raise DestinationValidationError("; ".join(errors))
