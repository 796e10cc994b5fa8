"""Structured intake payload for letter requests."""

from __future__ import annotations

from datetime import date
import re
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

ALLOWED_LETTER_TYPES = (
    "Demand Letter",
    "Cease and Desist",
    "Legal Notice",
    "Warning Letter",
    "Notice of Breach",
    "Complaint Letter",
    "Settlement Offer",
)

ADDITIONAL_DETAILS_MAX_CHARS = 3000
MAX_AMOUNT_DEMANDED = 10_000_000

FORBIDDEN_PATTERNS = [
    re.compile(r"<\s*script\b", re.IGNORECASE),
    re.compile(r"<\s*iframe\b", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"\bon(click|load|error|focus|blur|change|submit|mouse\w*|key\w*)\s*=", re.IGNORECASE),
    re.compile(r"\bselect\s+[\w*,\s]+\s+from\s+\w+", re.IGNORECASE),
    re.compile(r"\b(drop|truncate|alter)\s+table\b", re.IGNORECASE),
    re.compile(r"\binsert\s+into\b", re.IGNORECASE),
    re.compile(r"\bunion\s+(all\s+)?select\b", re.IGNORECASE),
    re.compile(r";\s*--"),
    re.compile(r"\b(ignore|disregard|forget)\s+(all\s+)?(previous|prior|above)\s+instructions\b", re.IGNORECASE),
    re.compile(r"\[\s*(system|assistant)\s*\]", re.IGNORECASE),
]

_PHONE_RE = re.compile(r"^\+?[\d\s().-]+$")


def contains_forbidden_patterns(value: Optional[str]) -> bool:
    if not value:
        return False
    return any(pattern.search(value) for pattern in FORBIDDEN_PATTERNS)


def validate_letter_type(letter_type: Optional[str]) -> str:
    cleaned = (letter_type or "").strip()
    if not cleaned:
        raise ValueError("Letter type is required.")
    if cleaned not in ALLOWED_LETTER_TYPES:
        raise ValueError(f"Invalid letter type: {cleaned}")
    return cleaned


class LetterIntake(BaseModel):
    """What the subscriber tells us about the dispute. Stored as letters.intake_data."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    sender_name: str = Field(min_length=1, max_length=200)
    sender_address: str = Field(min_length=1, max_length=500)
    sender_email: Optional[EmailStr] = None
    sender_phone: Optional[str] = None
    recipient_name: str = Field(min_length=1, max_length=200)
    recipient_address: str = Field(min_length=1, max_length=500)
    recipient_email: Optional[EmailStr] = None
    recipient_phone: Optional[str] = None
    issue_description: str = Field(min_length=20, max_length=10000)
    desired_outcome: str = Field(min_length=10, max_length=5000)
    amount_demanded: Optional[float] = Field(default=None, ge=0, le=MAX_AMOUNT_DEMANDED)
    deadline_date: Optional[date] = None
    incident_date: Optional[date] = None
    additional_details: Optional[str] = None
    extra_attributes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator(
        "sender_name",
        "sender_address",
        "recipient_name",
        "recipient_address",
        "issue_description",
        "desired_outcome",
        "additional_details",
    )
    @classmethod
    def _reject_forbidden_content(cls, value: Optional[str]) -> Optional[str]:
        if contains_forbidden_patterns(value):
            raise ValueError("contains forbidden content")
        return value

    @field_validator("additional_details")
    @classmethod
    def _truncate_details(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value[:ADDITIONAL_DETAILS_MAX_CHARS]

    @field_validator("sender_email", "recipient_email", mode="before")
    @classmethod
    def _blank_email_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("sender_phone", "recipient_phone")
    @classmethod
    def _check_phone(cls, value: Optional[str]) -> Optional[str]:
        if value in (None, ""):
            return None
        digits = re.sub(r"\D", "", value)
        if not _PHONE_RE.match(value) or not 7 <= len(digits) <= 15:
            raise ValueError("invalid phone number")
        return value

    @field_validator("extra_attributes")
    @classmethod
    def _check_extra_attributes(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        for key, item in value.items():
            if not isinstance(key, str) or len(key) > 64:
                raise ValueError("extra attribute keys must be short strings")
            # Keys are written into the prompt alongside their values.
            if contains_forbidden_patterns(key):
                raise ValueError("extra attribute key contains forbidden content")
            if isinstance(item, str) and contains_forbidden_patterns(item):
                raise ValueError(f"extra attribute '{key}' contains forbidden content")
            if not isinstance(item, (str, int, float, bool, type(None))):
                raise ValueError(f"extra attribute '{key}' must be a scalar value")
        return value

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
