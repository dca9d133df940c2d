# devstate/schema/validator.py
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from devstate.core.errors import ConfigurationError, ValidationError


@dataclass(frozen=True)
class ValidationReport:
    valid: bool
    errors: List[str] = field(default_factory=list)


class SchemaValidator:
    """Pass/fail contract over a JSON Schema for the state document."""

    def __init__(self, schema: dict):
        try:
            Draft202012Validator.check_schema(schema)
        except SchemaError as e:
            raise ConfigurationError(f"Invalid state schema: {e.message}") from e
        self.schema = schema
        self._validator = Draft202012Validator(schema)

    @classmethod
    def from_path(cls, path: Path | str | None) -> "SchemaValidator":
        if path is None:
            raise ConfigurationError("No state schema configured")
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Schema file not found: {path}")
        try:
            schema = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Schema file is not valid JSON: {path}: {e}") from e
        return cls(schema)

    def validate(self, document: Any) -> ValidationReport:
        errors = []
        for e in sorted(self._validator.iter_errors(document), key=str):
            errors.append(f"{list(e.absolute_path)}: {e.message}")
        return ValidationReport(valid=not errors, errors=errors)

    def require_valid(self, document: Any) -> None:
        report = self.validate(document)
        if not report.valid:
            raise ValidationError(
                "STATE schema validation failed: " + "; ".join(report.errors),
                errors=report.errors,
            )
