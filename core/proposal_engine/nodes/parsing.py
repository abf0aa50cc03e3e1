"""
Parsing - Turn raw collaborator output into structured content.

Content generators are language models; their output is usually JSON and
occasionally JSON wrapped in prose, markdown fences or Python literals.
extract_structured tries a strict parse first and falls back to a
heuristic repair, which is logged as a warning rather than failing the
node. When the repair fails too, the ContentParseError says why.
"""

import json
import logging
import re
from typing import Any

from proposal_engine.errors import ContentParseError

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^```[\w-]*\s*|\s*```$", re.MULTILINE)
_OUTERMOST = re.compile(r"(\{.*\}|\[.*\])", re.DOTALL)
_PYTHON_LITERAL = re.compile(r"\b(True|False|None)\b")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_JSON_LITERALS = {"True": "true", "False": "false", "None": "null"}


def _repair(text: str) -> tuple[Any, str | None]:
    """
    Recover JSON from model output.

    Strips markdown fences and surrounding prose, rewrites Python literals,
    drops trailing commas and, for text without double quotes, swaps single
    quotes.

    Returns:
        (value, None) on success, (None, reason) when nothing usable was found
    """
    body = _FENCE.sub("", text).strip()
    match = _OUTERMOST.search(body)
    if match is None:
        return None, "no JSON object or array in the output"

    candidate = _PYTHON_LITERAL.sub(lambda m: _JSON_LITERALS[m.group(1)], match.group(1))
    candidate = _TRAILING_COMMA.sub(r"\1", candidate)
    variants = [candidate]
    if "'" in candidate and '"' not in candidate:
        variants.append(candidate.replace("'", '"'))

    last_error: json.JSONDecodeError | None = None
    for variant in variants:
        try:
            return json.loads(variant), None
        except json.JSONDecodeError as e:
            last_error = e
    return None, f"repaired text is still invalid ({last_error})"


def extract_structured(raw: Any, what: str = "content") -> Any:
    """
    Parse collaborator output into a dict or list.

    Args:
        raw: Output to parse; dicts and lists pass through unchanged
        what: Used in log and error messages

    Returns:
        Parsed JSON value

    Raises:
        ContentParseError: Neither the strict parse nor the repair produced
            a dict or list
    """
    if isinstance(raw, (dict, list)):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        raise ContentParseError(f"No {what} to parse (got {type(raw).__name__})")

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        repaired, reason = _repair(raw)
        if isinstance(repaired, (dict, list)):
            logger.warning(f"⚠ Recovered malformed {what} output with heuristic repair ({e})")
            return repaired
        raise ContentParseError(f"Could not parse {what} output: {e}; {reason}") from e

    if not isinstance(parsed, (dict, list)):
        raise ContentParseError(f"Expected an object or array for {what}, got {type(parsed).__name__}")
    return parsed
