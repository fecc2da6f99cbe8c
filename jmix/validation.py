"""
Schema Validator
Validates manifest, metadata, audit and files documents against JSON
schemas named `<kind>.schema.json` in a schema directory.

Validation is skippable: when a schema is missing or cannot be loaded,
a warning is logged and the document passes. Only a document that
actually violates a loaded schema fails.
"""

import json
import logging
from pathlib import Path

from jsonschema.exceptions import SchemaError
from jsonschema.validators import validator_for

from jmix.errors import ValidationError

logger = logging.getLogger(__name__)

SCHEMA_KINDS = ("manifest", "metadata", "audit", "files")


class SchemaValidator:
    """
    JSON schema validation for envelope documents.

    Args:
        schema_path: Directory holding `<kind>.schema.json` files.
            None disables validation.
        strict: Check that each schema is itself valid before use.
    """

    def __init__(self, schema_path: str | Path = None, strict: bool = True):
        self.schema_path = Path(schema_path) if schema_path else None
        self.strict = strict
        self._cache: dict[str, dict] = {}

    def _schema_file(self, kind: str) -> Path | None:
        if self.schema_path is None:
            return None
        return self.schema_path / f"{kind}.schema.json"

    def _load(self, kind: str) -> dict | None:
        if kind in self._cache:
            return self._cache[kind]
        schema_file = self._schema_file(kind)
        if schema_file is None or not schema_file.is_file():
            logger.warning("Schema validation skipped: %s not found", schema_file)
            return None
        try:
            schema = json.loads(schema_file.read_text(encoding="utf-8"))
            if self.strict:
                validator_for(schema).check_schema(schema)
        except (OSError, ValueError, SchemaError) as e:
            logger.warning("Schema validation error for %s, skipping: %s", kind, e)
            return None
        self._cache[kind] = schema
        return schema

    def validate(self, kind: str, document) -> None:
        """
        Validate one document.

        Raises:
            ValidationError: Listing every violation as "path: message".
        """
        schema = self._load(kind)
        if schema is None:
            return

        cls = validator_for(schema)
        validator = cls(schema, format_checker=cls.FORMAT_CHECKER)
        errors = []
        for error in sorted(validator.iter_errors(document), key=lambda e: list(e.absolute_path)):
            location = "/" + "/".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"
            errors.append(f"{location}: {error.message}")
        if errors:
            raise ValidationError(f"{kind} validation failed", errors)

    def validate_envelope(self, manifest: dict, metadata: dict, audit: dict, files: dict = None) -> None:
        """Validate every document of an envelope; the first failing kind raises."""
        self.validate("manifest", manifest)
        self.validate("metadata", metadata)
        self.validate("audit", audit)
        if files is not None:
            self.validate("files", files)

    def is_schema_available(self, kind: str = None) -> bool:
        """True if the named schema (or any schema, when kind is None) exists."""
        if kind is not None:
            schema_file = self._schema_file(kind)
            return schema_file is not None and schema_file.is_file()
        return any(self.is_schema_available(k) for k in SCHEMA_KINDS)
