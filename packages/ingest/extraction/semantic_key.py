from __future__ import annotations

from datetime import date
from typing import Any, Optional

from packages.core.config import CategoryRule
from packages.core.schemas.chart import EntityCategory, EventDate

UNDATED = "undated"


def normalize_text(value: Any) -> str:
    """Case- and whitespace-insensitive form used for identity comparisons."""
    if value is None:
        return ""
    return " ".join(str(value).split()).casefold()


def date_bucket(event_date: Optional[EventDate], window_days: int) -> str:
    """Start of the fixed ``window_days`` window holding the date's lower bound."""
    if event_date is None:
        return UNDATED
    ordinal = event_date.lower_bound().toordinal()
    start = ordinal - ((ordinal - 1) % window_days)
    return date.fromordinal(start).isoformat()


def build_semantic_key(
    category: EntityCategory,
    payload: Any,
    event_date: Optional[EventDate],
    rule: CategoryRule,
) -> str:
    parts = [normalize_text(getattr(payload, field, None)) for field in rule.key_fields]
    if rule.date_window_days is not None:
        parts.append(date_bucket(event_date, rule.date_window_days))
    return "|".join(parts)


__all__ = ["UNDATED", "normalize_text", "date_bucket", "build_semantic_key"]
