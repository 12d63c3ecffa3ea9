"""Structured output parsing for code-generation CLI responses.

`claude -p --output-format json` prints a single JSON envelope on stdout.
Parsing distinguishes two failure shapes so callers can report them:
- ParsingError: stdout is not JSON at all
- InvalidOutputError: JSON, but does not match the CliResponse schema
"""

import json

from pydantic import ValidationError

from steward.core.models import CliResponse


class ParsingError(Exception):
    """Failed to parse JSON from CLI stdout."""

    pass


class InvalidOutputError(Exception):
    """CLI output doesn't match expected schema."""

    pass


def parse_cli_response(stdout: str) -> CliResponse:
    """Parse and validate the CLI's JSON envelope.

    Raises:
        ParsingError: If stdout is empty or not valid JSON
        InvalidOutputError: If the JSON doesn't match CliResponse
    """
    if not stdout.strip():
        raise ParsingError("Empty output from CLI")

    try:
        raw = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise ParsingError(f"Invalid JSON in output: {e}") from e

    if not isinstance(raw, dict):
        raise InvalidOutputError(
            f"Output doesn't match {CliResponse.__name__} schema: "
            f"expected a JSON object, got {type(raw).__name__}"
        )

    try:
        return CliResponse.model_validate(raw)
    except ValidationError as e:
        raise InvalidOutputError(f"Output doesn't match {CliResponse.__name__} schema: {e}") from e
