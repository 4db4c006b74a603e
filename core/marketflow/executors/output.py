"""Parsing and validation of structured agent output.

Agents are asked for JSON but frequently wrap it in markdown fences or
prose. ``parse_structured_response`` recovers the JSON object when it can;
``OutputValidator`` then checks it against the node's documented contract
(a JSON Schema and/or a list of required keys).
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

import jsonschema

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of validating an output."""

    success: bool
    errors: list[str]

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""


def parse_structured_response(raw: Any) -> Any:
    """
    Best-effort decode of an agent response.

    Dicts and lists are returned unchanged. Strings are stripped of markdown
    code fences and decoded; failing that, the outermost ``{...}`` block is
    tried with Python literals (True/False/None) repaired. Returns None when
    nothing decodes.
    """
    if isinstance(raw, dict | list):
        return raw
    if not isinstance(raw, str):
        return None

    text = re.sub(r"^```(?:json)?\s*", "", raw.strip(), flags=re.MULTILINE)
    text = re.sub(r"\s*```$", "", text, flags=re.MULTILINE).strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    match = re.search(r"\{.*\}", text, re.DOTALL)
    if not match:
        return None
    candidate = match.group(0)
    candidate = re.sub(r"\bTrue\b", "true", candidate)
    candidate = re.sub(r"\bFalse\b", "false", candidate)
    candidate = re.sub(r"\bNone\b", "null", candidate)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        logger.debug("Agent response contained no decodable JSON object")
        return None


class OutputValidator:
    """Validates structured outputs against a node's output contract."""

    def validate_schema(self, output: Any, schema: dict[str, Any]) -> ValidationResult:
        """Validate ``output`` against a JSON Schema (Draft 7)."""
        errors = []
        validator = jsonschema.Draft7Validator(schema)
        for error in validator.iter_errors(output):
            path = ".".join(str(p) for p in error.path) if error.path else "root"
            errors.append(f"{path}: {error.message}")
        return ValidationResult(success=len(errors) == 0, errors=errors)

    def validate_required_keys(self, output: Any, keys: list[str]) -> ValidationResult:
        if not isinstance(output, dict):
            return ValidationResult(success=False, errors=["output is not a JSON object"])
        missing = [k for k in keys if output.get(k) is None]
        return ValidationResult(
            success=not missing,
            errors=[f"missing required key '{k}'" for k in missing],
        )

    @staticmethod
    def check_schema(schema: dict[str, Any]) -> list[str]:
        """Problems with a schema itself (used at validation time)."""
        try:
            jsonschema.Draft7Validator.check_schema(schema)
        except jsonschema.SchemaError as e:
            return [f"invalid outputSchema: {e.message}"]
        return []
