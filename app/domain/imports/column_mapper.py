"""
Column mapping for bulk imports.

Matches arbitrary source headers against the registry fields of one entity
type. Matching is deliberately conservative: a column is only assigned
automatically when its confidence reaches the auto-accept threshold, and
every other column is surfaced for manual assignment.
"""

from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import List, Optional, Set, Tuple
import re
import logging

from app.core.config import settings
from app.domain.imports.registry import EntityFieldSpec, get_entity_schema

logger = logging.getLogger(__name__)

# Best scores under this floor are reported as "no suggestion" (confidence 0).
SUGGESTION_FLOOR = 40


@dataclass
class ColumnMapping:
    source_column: str
    target_field: str = ""
    confidence: int = 0
    required: bool = False


def normalize_column_name(name: str) -> str:
    """
    Normalize a column name for comparison.

    Examples:
        "Serial Number" -> "serialnumber"
        "serial_number" -> "serialnumber"
        "QR/Bar code"   -> "qrbarcode"
    """
    normalized = name.lower()
    normalized = re.sub(r'[\s\-_]+', '', normalized)
    normalized = re.sub(r'[^a-z0-9]', '', normalized)
    return normalized


def _tokens(name: str) -> Set[str]:
    spaced = re.sub(r'([a-z])([A-Z])', r'\1 \2', name)
    return {token for token in re.split(r'[^a-z0-9]+', spaced.lower()) if token}


def _candidate_score(header: str, candidate: str) -> int:
    normalized_header = normalize_column_name(header)
    normalized_candidate = normalize_column_name(candidate)
    if not normalized_header or not normalized_candidate:
        return 0
    if normalized_header == normalized_candidate:
        return 100

    ratio = SequenceMatcher(None, normalized_header, normalized_candidate).ratio()
    header_tokens = _tokens(header)
    candidate_tokens = _tokens(candidate)
    union = header_tokens | candidate_tokens
    overlap = len(header_tokens & candidate_tokens) / len(union) if union else 0.0

    # Anything short of an exact normalized match stays below 100.
    return min(99, int(round(100 * (0.6 * ratio + 0.4 * overlap))))


def score_field(header: str, spec: EntityFieldSpec) -> int:
    """Similarity (0-100) between a header and a field's key or label, whichever is closer."""
    return max(
        _candidate_score(header, spec.key.replace("_", " ")),
        _candidate_score(header, spec.label),
    )


def best_field_match(header: str, fields) -> Tuple[Optional[EntityFieldSpec], int]:
    best_spec = None
    best_score = 0
    # Strict comparison keeps registry order as the tie-breaker.
    for spec in fields:
        score = score_field(header, spec)
        if score > best_score:
            best_spec = spec
            best_score = score
    return best_spec, best_score


def infer_mapping(
    headers: List[str],
    entity_type,
    auto_accept_threshold: Optional[int] = None,
) -> List[ColumnMapping]:
    """
    Suggest a target field for each source header.

    Args:
        headers: Source column headers, in file order
        entity_type: Entity type key the file is imported as
        auto_accept_threshold: Minimum confidence for automatic assignment
            (defaults to ``settings.mapping_auto_accept_threshold``)

    Returns:
        One ``ColumnMapping`` per header, in the same order. ``target_field``
        is empty unless the match was auto-accepted.
    """
    schema = get_entity_schema(entity_type)
    threshold = settings.mapping_auto_accept_threshold if auto_accept_threshold is None else auto_accept_threshold

    mappings: List[ColumnMapping] = []
    claimed: Set[str] = set()
    for header in headers:
        spec, score = best_field_match(str(header), schema.fields)
        if spec is None or score < SUGGESTION_FLOOR:
            mappings.append(ColumnMapping(source_column=header))
            continue

        target = ""
        if score >= threshold and spec.key not in claimed:
            target = spec.key
            claimed.add(spec.key)

        mappings.append(ColumnMapping(
            source_column=header,
            target_field=target,
            confidence=score,
            required=spec.required,
        ))

    accepted = sum(1 for mapping in mappings if mapping.target_field)
    logger.info(
        f"Inferred mapping for {len(headers)} column(s) as {schema.entity_type.value}: "
        f"{accepted} auto-accepted, {len(headers) - accepted} left for review"
    )
    return mappings
