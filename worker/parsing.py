"""Harvested output -> structured result."""

import json
import re

from shared.errors import ParseFailure

_FENCE = re.compile(r"```(?:json)?")


def parse_structured(text: str) -> dict:
    """
    Parse the JSON object embedded in a chat response.

    Code fences are stripped, then the span from the first '{' to the
    last '}' is decoded. Raises ParseFailure.
    """
    cleaned = _FENCE.sub("", text or "").strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise ParseFailure("No JSON found in response")

    try:
        data = json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError as e:
        raise ParseFailure(f"Error Parsing JSON: {e}") from e

    if not isinstance(data, dict):
        raise ParseFailure("Error Parsing JSON: top-level value is not an object")
    return data


def extract_structured(text: str) -> dict:
    """Like parse_structured, but failures degrade to {"reasoning": <why>}."""
    try:
        return parse_structured(text)
    except ParseFailure as e:
        return {"reasoning": str(e)}
