"""Mapping and comparison of mirrored fields between the two stores.

The document store keeps dates as ISO-8601 strings and datetimes at
millisecond precision, so values are normalized before they are compared.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from proposal_sync.core.exceptions import ValidationError
from proposal_sync.schemas.proposal import MIRRORED_FIELDS, FieldDifference


def utc_now() -> datetime:
    """Current time in UTC, truncated to the document store's precision."""
    return truncate_to_millis(datetime.now(timezone.utc))


def truncate_to_millis(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def normalize_proposal_id(proposal_id: Any) -> str:
    """Normalize an incoming proposal identifier (str or int) to a string.

    Raises:
        ValidationError: If the identifier is missing or blank
    """
    if proposal_id is None or isinstance(proposal_id, bool):
        raise ValidationError("Proposal id is required")
    normalized = str(proposal_id).strip()
    if not normalized:
        raise ValidationError("Proposal id is required")
    return normalized


def normalize_value(value: Any) -> Any:
    """Canonical form used when comparing a field across stores."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return truncate_to_millis(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def to_document_value(value: Any) -> Any:
    """Convert a relational value to the shape stored in the document store."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return truncate_to_millis(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def to_relational_value(field: str, value: Any) -> Any:
    """Convert a document value back to the relational column type."""
    if value is None:
        return None
    if field in ("event_start_date", "event_end_date") and isinstance(value, str):
        return date.fromisoformat(value[:10])
    if field.endswith("_at") and isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


def record_to_mirror(record: Any) -> Dict[str, Any]:
    """Extract the mirrored fields from a relational record, in document shape."""
    return {name: to_document_value(getattr(record, name, None)) for name in MIRRORED_FIELDS}


def diff_fields(
    relational: Mapping[str, Any],
    document: Mapping[str, Any],
    fields: Optional[Iterable[str]] = None,
) -> List[FieldDifference]:
    """Return every mirrored field whose normalized values differ.

    A field missing on either side compares as None. Order follows
    ``fields`` (defaults to MIRRORED_FIELDS) so results are deterministic.
    """
    differences = []
    for name in fields or MIRRORED_FIELDS:
        relational_value = normalize_value(relational.get(name))
        document_value = normalize_value(document.get(name))
        if relational_value != document_value:
            differences.append(
                FieldDifference(
                    field=name,
                    relational_value=relational_value,
                    document_value=document_value,
                )
            )
    return differences
