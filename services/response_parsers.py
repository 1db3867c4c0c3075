"""Lenient parsers for free-form model output.

Model responses are untrusted text. Every parser here returns a typed result
or an empty/None value and never raises, so callers can treat a malformed
response the same way as no response.
"""

import re
from typing import Any

from pydantic import ValidationError

from models.postgres import DecisionType
from models.schemas import ConflictVerdict, ExtractedDecision, ExtractedTopic
from utils.json_extraction import extract_json_array, extract_json_from_response
from utils.logging import get_logger

logger = get_logger(__name__)

_RESULT_PATTERN = re.compile(r"RESULT:\s*(CONFLICT|SUPERSEDE|OVERLAP|NO_CONFLICT)", re.I)
_CONFIDENCE_PATTERN = re.compile(r"CONFIDENCE:\s*([\d.]+)", re.I)
_EXPLANATION_PATTERN = re.compile(r"EXPLANATION:\s*(.+)", re.I)

DEFAULT_CONFLICT_EXPLANATION = "Potential overlap detected"

_DECISION_TYPES = {t.value for t in DecisionType}


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().rstrip("%"))
        except ValueError:
            return None
    return None


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    names = []
    for entry in value:
        if isinstance(entry, str) and entry.strip():
            names.append(entry.strip())
        elif isinstance(entry, dict) and isinstance(entry.get("name"), str):
            names.append(entry["name"].strip())
    return names


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_cluster_name(text: str | None) -> tuple[str | None, str | None]:
    """Parse a {"name": ..., "description": ...} naming suggestion.

    Returns (None, None) when the response has no usable name.
    """
    data = extract_json_from_response(text, context="cluster_naming")
    if not isinstance(data, dict):
        return None, None

    name = _optional_str(data.get("name"))
    if name is None:
        return None, None
    return name, _optional_str(data.get("description"))


def parse_extracted_decisions(
    text: str | None,
    min_confidence: float = 50,
    min_summary_length: int = 10,
) -> list[ExtractedDecision]:
    """Parse the extraction model's JSON array of decisions.

    Candidates need a summary longer than ``min_summary_length`` characters
    and a confidence (0-100) of at least ``min_confidence``. Entries that do
    not fit the shape are skipped.
    """
    entries = extract_json_array(text)
    if not entries:
        return []

    decisions = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue

        summary = _optional_str(entry.get("summary"))
        confidence = _as_float(entry.get("confidence"))
        if summary is None or len(summary) <= min_summary_length:
            continue
        if confidence is None or confidence < min_confidence:
            continue

        decision_type = entry.get("decisionType", entry.get("decision_type"))
        if not isinstance(decision_type, str) or decision_type.lower() not in _DECISION_TYPES:
            decision_type = DecisionType.OTHER.value

        try:
            decisions.append(
                ExtractedDecision(
                    summary=summary,
                    context=_optional_str(entry.get("context")),
                    reasoning=_optional_str(entry.get("reasoning")),
                    decision_type=decision_type.lower(),
                    confidence=min(confidence, 100.0),
                    participants=_as_str_list(entry.get("participants")),
                    tags=_as_str_list(entry.get("tags")),
                )
            )
        except ValidationError as e:
            logger.debug(f"Skipping malformed extracted decision: {e}")

    return decisions


def parse_conflict_verdict(
    text: str | None, default_confidence: float
) -> ConflictVerdict | None:
    """Parse a RESULT / CONFIDENCE / EXPLANATION verdict.

    Returns None when no RESULT line is present. A missing or unparseable
    confidence falls back to ``default_confidence``; the value is clamped to
    [0, 1].
    """
    if not text:
        return None

    result_match = _RESULT_PATTERN.search(text)
    if not result_match:
        return None

    confidence = None
    confidence_match = _CONFIDENCE_PATTERN.search(text)
    if confidence_match:
        confidence = _as_float(confidence_match.group(1))
    if confidence is None:
        confidence = default_confidence

    explanation_match = _EXPLANATION_PATTERN.search(text)
    explanation = (
        explanation_match.group(1).strip() if explanation_match else ""
    ) or DEFAULT_CONFLICT_EXPLANATION

    return ConflictVerdict(
        result=result_match.group(1).upper(),
        confidence=max(0.0, min(1.0, confidence)),
        explanation=explanation,
    )


def parse_topics(text: str | None, min_confidence: float = 0.5) -> list[ExtractedTopic]:
    """Parse [{"topic": ..., "confidence": 0-1}, ...], keeping confident topics."""
    entries = extract_json_array(text)
    if not entries:
        return []

    topics = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        topic = _optional_str(entry.get("topic"))
        confidence = _as_float(entry.get("confidence"))
        if topic is None or confidence is None or confidence < min_confidence:
            continue
        topics.append(ExtractedTopic(topic=topic, confidence=min(confidence, 1.0)))
    return topics
