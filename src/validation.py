"""
Spec Validation - JSON Schema checks for managed resource specs.

Providers publish a Draft 7 schema per kind; specs submitted by external
actors are validated against it before they reach the store.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, SchemaError

logger = logging.getLogger(__name__)


def validate_openapi_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Check that a provider's schema is itself a valid Draft 7 JSON Schema.

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema)
        return True, None
    except SchemaError as e:
        return False, f"Invalid schema: {e.message}"


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a resource spec against a kind's schema.

    All violations are reported, joined with '; ', each prefixed by the
    dotted path of the offending field.

    Returns:
        Tuple of (is_valid, error_message)
    """
    validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
    errors = sorted(validator.iter_errors(spec), key=lambda e: e.json_path)

    if not errors:
        return True, None

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        error_messages.append(f"{path}: {error.message}")

    return False, "; ".join(error_messages)


def validate_resource_spec(
    provider: Any, kind: str, spec: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a spec against the schema the owning provider publishes for a kind.

    Args:
        provider: The ProviderPlugin managing the kind
        kind: The managed resource kind
        spec: The submitted spec

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        schema = provider.spec_schema(kind)
    except ValueError as e:
        return False, str(e)
    return validate_spec_against_schema(spec, schema)
