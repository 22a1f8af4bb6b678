from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from packages.core.schemas.chart import EntityCategory

ENV_PREFIX = "RECONCILER_"


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=0.5, ge=0.0)
    max_delay_seconds: float = Field(default=8.0, ge=0.0)
    jitter_seconds: float = Field(default=0.25, ge=0.0)

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based), without jitter."""
        return min(self.base_delay_seconds * (2**attempt), self.max_delay_seconds)


class CategoryRule(BaseModel):
    """How one category is validated and keyed.

    ``date_window_days`` sets the equivalence window used in the semantic key:
    two assertions whose dates fall in the same window are treated as the same
    fact. ``None`` drops the date from the key entirely.
    """

    model_config = ConfigDict(frozen=True)

    date_field: str
    key_fields: Tuple[str, ...]
    required_fields: Tuple[str, ...] = ()
    required_any: Tuple[str, ...] = ()
    date_window_days: Optional[int] = Field(default=None, ge=1)


def default_category_rules() -> Dict[EntityCategory, CategoryRule]:
    return {
        EntityCategory.DIAGNOSIS: CategoryRule(
            date_field="onset_date",
            key_fields=("condition",),
            required_fields=("condition",),
        ),
        EntityCategory.MEDICATION: CategoryRule(
            date_field="start_date",
            key_fields=("name",),
            required_fields=("name",),
            required_any=("dosage", "frequency"),
            date_window_days=1,
        ),
        EntityCategory.PROCEDURE: CategoryRule(
            date_field="performed_date",
            key_fields=("name",),
            required_fields=("name",),
            date_window_days=1,
        ),
        EntityCategory.ALLERGY: CategoryRule(
            date_field="recorded_date",
            key_fields=("allergen",),
            required_fields=("allergen",),
        ),
        EntityCategory.LAB_TEST: CategoryRule(
            date_field="collected_date",
            key_fields=("test_name",),
            required_fields=("test_name", "value"),
            date_window_days=1,
        ),
    }


class ReconcilerSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_workers: int = Field(default=4, ge=1)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    snapshot_dir: Optional[Path] = None
    category_rules: Dict[EntityCategory, CategoryRule] = Field(
        default_factory=default_category_rules
    )

    def rule_for(self, category: EntityCategory) -> CategoryRule:
        return self.category_rules[category]

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "ReconcilerSettings":
        """Build settings from ``RECONCILER_*`` variables, loading ``.env`` first.

        Variables already present in the environment take precedence over the
        file.
        """
        if env_path is not None:
            load_dotenv(env_path, override=False)
        else:
            load_dotenv(override=False)

        defaults = RetryPolicy()
        retry = RetryPolicy(
            max_attempts=_int_env("RETRY_MAX_ATTEMPTS", defaults.max_attempts),
            base_delay_seconds=_float_env("RETRY_BASE_DELAY", defaults.base_delay_seconds),
            max_delay_seconds=_float_env("RETRY_MAX_DELAY", defaults.max_delay_seconds),
            jitter_seconds=_float_env("RETRY_JITTER", defaults.jitter_seconds),
        )

        rules = default_category_rules()
        for category, rule in list(rules.items()):
            raw = os.getenv(f"{ENV_PREFIX}{category.name}_WINDOW_DAYS")
            if raw is None:
                continue
            raw = raw.strip().lower()
            window = None if raw in ("", "none", "off") else int(raw)
            rules[category] = CategoryRule.model_validate(
                {**rule.model_dump(), "date_window_days": window}
            )

        snapshot_dir = os.getenv(f"{ENV_PREFIX}SNAPSHOT_DIR")
        return cls(
            max_workers=_int_env("MAX_WORKERS", 4),
            retry=retry,
            snapshot_dir=Path(snapshot_dir) if snapshot_dir else None,
            category_rules=rules,
        )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number") from exc


__all__ = [
    "RetryPolicy",
    "CategoryRule",
    "ReconcilerSettings",
    "default_category_rules",
]
