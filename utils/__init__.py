"""Shared utilities for the knowledge graph engine."""

from utils.json_extraction import extract_json_array, extract_json_from_response
from utils.vectors import calculate_centroid, cosine_similarity

__all__ = [
    "calculate_centroid",
    "cosine_similarity",
    "extract_json_array",
    "extract_json_from_response",
]
