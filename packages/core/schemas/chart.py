from __future__ import annotations

import re
from abc import abstractmethod
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

_PARTIAL_DATE = re.compile(r"^(\d{4})(?:-(\d{1,2}))?(?:-(\d{1,2}))?$")


class EntityCategory(str, Enum):
    DIAGNOSIS = "diagnosis"
    MEDICATION = "medication"
    PROCEDURE = "procedure"
    ALLERGY = "allergy"
    LAB_TEST = "lab_test"


class DatePrecision(str, Enum):
    YEAR = "year"
    MONTH = "month"
    DAY = "day"


_PRECISION_RANK = {DatePrecision.YEAR: 0, DatePrecision.MONTH: 1, DatePrecision.DAY: 2}


class SourceReference(BaseModel):
    """Pointer back to the document an extraction came from."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    document_id: str = Field(min_length=1)
    document_name: str = ""
    page_number: Optional[int] = None
    extraction_timestamp: datetime

    @field_validator("extraction_timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def sort_key(self) -> tuple[datetime, str, int, str]:
        return (
            self.extraction_timestamp,
            self.document_id,
            self.page_number or 0,
            self.document_name,
        )


class EventDate(BaseModel):
    """A calendar date known to year, month or day precision."""

    model_config = ConfigDict(frozen=True)

    year: int = Field(ge=1, le=9999)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    day: Optional[int] = Field(default=None, ge=1, le=31)

    @model_validator(mode="after")
    def _check_calendar(self) -> "EventDate":
        if self.day is not None and self.month is None:
            raise ValueError("day requires month")
        if self.day is not None:
            date(self.year, self.month, self.day)
        return self

    @property
    def precision(self) -> DatePrecision:
        if self.day is not None:
            return DatePrecision.DAY
        if self.month is not None:
            return DatePrecision.MONTH
        return DatePrecision.YEAR

    @property
    def precision_rank(self) -> int:
        return _PRECISION_RANK[self.precision]

    def lower_bound(self) -> date:
        return date(self.year, self.month or 1, self.day or 1)

    def isoformat(self) -> str:
        if self.month is None:
            return f"{self.year:04d}"
        if self.day is None:
            return f"{self.year:04d}-{self.month:02d}"
        return f"{self.year:04d}-{self.month:02d}-{self.day:02d}"

    @classmethod
    def parse(cls, value: Any) -> Optional["EventDate"]:
        """Parse a date, datetime, ISO string or partial ISO string.

        Returns ``None`` for empty input and raises ``ValueError`` when the
        value is present but cannot be read as a date.
        """
        if value is None:
            return None
        if isinstance(value, EventDate):
            return value
        if isinstance(value, datetime):
            return cls(year=value.year, month=value.month, day=value.day)
        if isinstance(value, date):
            return cls(year=value.year, month=value.month, day=value.day)
        if isinstance(value, dict):
            return cls(**value)
        if not isinstance(value, str):
            raise ValueError("unsupported date type")
        text = value.strip()
        if not text:
            return None
        match = _PARTIAL_DATE.match(text)
        if match:
            year, month, day = match.groups()
            return cls(
                year=int(year),
                month=int(month) if month else None,
                day=int(day) if day else None,
            )
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError("unparseable date") from exc
        return cls(year=parsed.year, month=parsed.month, day=parsed.day)


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True)

    @abstractmethod
    def label(self) -> str:
        """Short human-readable rendering of the payload."""


class DiagnosisPayload(_Payload):
    category: Literal["diagnosis"] = "diagnosis"
    condition: str
    icd_code: Optional[str] = None
    severity: Optional[str] = None

    def label(self) -> str:
        return self.condition


class MedicationPayload(_Payload):
    category: Literal["medication"] = "medication"
    name: str
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    route: Optional[str] = None
    end_date: Optional[EventDate] = None

    def label(self) -> str:
        parts = [self.name, self.dosage or "", self.frequency or ""]
        return " ".join(part for part in parts if part)


class ProcedurePayload(_Payload):
    category: Literal["procedure"] = "procedure"
    name: str
    outcome: Optional[str] = None
    body_site: Optional[str] = None

    def label(self) -> str:
        return self.name


class AllergyPayload(_Payload):
    category: Literal["allergy"] = "allergy"
    allergen: str
    reaction: Optional[str] = None
    severity: Optional[str] = None

    def label(self) -> str:
        return self.allergen


class LabTestPayload(_Payload):
    category: Literal["lab_test"] = "lab_test"
    test_name: str
    value: str
    unit: Optional[str] = None
    reference_range: Optional[str] = None
    interpretation: Optional[str] = None

    def label(self) -> str:
        unit_text = f" {self.unit}" if self.unit else ""
        return f"{self.test_name}: {self.value}{unit_text}"


EntityPayload = Annotated[
    Union[DiagnosisPayload, MedicationPayload, ProcedurePayload, AllergyPayload, LabTestPayload],
    Field(discriminator="category"),
]

PAYLOAD_MODELS = {
    EntityCategory.DIAGNOSIS: DiagnosisPayload,
    EntityCategory.MEDICATION: MedicationPayload,
    EntityCategory.PROCEDURE: ProcedurePayload,
    EntityCategory.ALLERGY: AllergyPayload,
    EntityCategory.LAB_TEST: LabTestPayload,
}


class Attestation(BaseModel):
    """One extraction asserting an entity, with that extraction's confidence."""

    model_config = ConfigDict(frozen=True)

    source: SourceReference
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class MedicalEntity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    category: EntityCategory
    semantic_key: str
    event_date: Optional[EventDate] = None
    status: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    attestations: Tuple[Attestation, ...] = Field(min_length=1)
    payload: EntityPayload

    @property
    def sources(self) -> List[SourceReference]:
        unique = {attestation.source for attestation in self.attestations}
        return sorted(unique, key=lambda source: source.sort_key())

    @property
    def document_ids(self) -> List[str]:
        return sorted({attestation.source.document_id for attestation in self.attestations})

    @property
    def earliest_extraction(self) -> datetime:
        return min(attestation.source.extraction_timestamp for attestation in self.attestations)

    def label(self) -> str:
        return self.payload.label()


__all__ = [
    "EntityCategory",
    "DatePrecision",
    "SourceReference",
    "EventDate",
    "DiagnosisPayload",
    "MedicationPayload",
    "ProcedurePayload",
    "AllergyPayload",
    "LabTestPayload",
    "EntityPayload",
    "PAYLOAD_MODELS",
    "Attestation",
    "MedicalEntity",
]
