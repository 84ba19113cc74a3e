"""JSON Schema validation of agent outputs."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

logger = logging.getLogger(__name__)


def validate_output(schema: Dict[str, Any], document: Any) -> List[str]:
    """Validate ``document`` against ``schema``.

    Returns a list of human readable violations; an empty list means the
    document is valid. A malformed schema is reported as a violation rather
    than raised.
    """

    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as e:
        logger.error(f"Invalid output schema: {e.message}")
        return [f"Schema validation error: {e.message}"]

    validator = Draft202012Validator(schema)
    errors = sorted(
        validator.iter_errors(document), key=lambda e: [str(p) for p in e.path]
    )
    return [f"{_format_path(error.path)}: {error.message}" for error in errors]


def _format_path(path) -> str:
    parts = [str(p) for p in path]
    return "$" + "".join(f"[{p}]" if p.isdigit() else f".{p}" for p in parts)
