"""Pull JSON payloads out of free-form model output.

Models wrap JSON in prose, code fences or reasoning preambles. The helpers
here try progressively looser readings and return None instead of raising.
"""

import json
import re
from typing import Any, Callable, Iterator

from utils.logging import get_logger

logger = get_logger(__name__)

_FENCED_JSON = re.compile(r"```json\s*\n?(.*?)\n?```", re.DOTALL | re.IGNORECASE)
_FENCED_ANY = re.compile(r"```\s*\n?(.*?)\n?```", re.DOTALL)
# Arrays of flat objects, then objects nested at most one level
_EMBEDDED_ARRAY = re.compile(r"\[[^\]]*(?:\{[^\}]*\}[^\]]*)*\]", re.DOTALL)
_EMBEDDED_OBJECT = re.compile(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}", re.DOTALL)


def _candidates(text: str) -> Iterator[str]:
    """Substrings worth handing to json.loads, most literal reading first."""
    yield text
    for pattern in (_FENCED_JSON, _FENCED_ANY, _EMBEDDED_ARRAY, _EMBEDDED_OBJECT):
        match = pattern.search(text)
        if match:
            yield (match.group(1) if pattern.groups else match.group(0)).strip()


def _first_parse(text: str, accept: Callable[[Any], bool] = lambda _: True) -> Any | None:
    for candidate in _candidates(text):
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if accept(value):
            return value
    return None


def extract_json_from_response(
    response: str | None, context: str = "extraction", expect_list: bool = False
) -> Any | None:
    """Parse the first JSON value found in ``response``.

    Readings tried in order: the whole text, a ```json fence, any fence, an
    embedded array, an embedded object. With ``expect_list`` a lone object is
    wrapped in a list and scalars are rejected.

    Args:
        response: Raw model output
        context: Label for the warning logged on failure (e.g. "cluster_naming")
        expect_list: Require a list result
    """
    if not response:
        return None

    text = response.strip()
    result = _first_parse(text)

    if expect_list and isinstance(result, dict):
        return [result]
    if expect_list and result is not None and not isinstance(result, list):
        logger.warning(f"{context}: expected a JSON list, got {type(result).__name__}")
        return None
    if result is None:
        logger.warning(f"{context}: no JSON in {len(text)}-char response: {text[:200]!r}")
    return result


def extract_json_array(response: str | None) -> list | None:
    """Parse the span from the first '[' to the last ']' as a JSON array.

    The greedy span keeps nested brackets intact and ignores prose around the
    array. Returns None when that span is not a JSON list.
    """
    if not response:
        return None

    start, end = response.find("["), response.rfind("]")
    if start == -1 or end <= start:
        return None

    try:
        result = json.loads(response[start : end + 1])
    except json.JSONDecodeError as e:
        logger.debug(f"Bracketed span is not valid JSON: {e}")
        return None
    return result if isinstance(result, list) else None
