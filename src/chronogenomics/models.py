"""
Record models for ChronoGenomics.

Records are stored as UTF-8 JSON under ``analysis_{id}`` using the field names
of the original on-chain layout, so existing data stays readable.
"""

import json
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from chronogenomics.errors import MalformedRecord

INDEX_KEY = "analysis_keys"
RECORD_KEY_PREFIX = "analysis_"

# Shown for analysed records whose stored result fields are missing.
UNKNOWN_CATEGORY = "Unknown"
DEFAULT_SCHEDULE_START = "22:00"
DEFAULT_SCHEDULE_END = "06:00"
DEFAULT_PEAK_WINDOW = "10:00-14:00"


def record_key(record_id: str) -> str:
    return f"{RECORD_KEY_PREFIX}{record_id}"


class AnalysisStatus(str, Enum):
    """Lifecycle of a record. Only Pending -> Analyzed / Errored is allowed."""
    PENDING = "pending"
    ANALYZED = "analyzed"
    ERRORED = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not AnalysisStatus.PENDING


class Submission(BaseModel):
    """Plaintext submission as entered by the client."""
    dna_sequence: str
    lifestyle: str = "balanced"
    age_range: str = "25-35"

    def metadata(self) -> Dict[str, Any]:
        return {"lifestyle": self.lifestyle, "ageRange": self.age_range}


class AnalysisRecord(BaseModel):
    """One analysis submission and its eventual result."""

    model_config = ConfigDict(frozen=True)

    id: str
    encoded_payload: str
    created_at: int
    owner: str
    category: str = ""
    schedule_start: str = ""
    schedule_end: str = ""
    peak_window: str = ""
    status: AnalysisStatus = AnalysisStatus.PENDING
    error: Optional[str] = None

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, value: str) -> str:
        if not value:
            raise ValueError("record id must not be empty")
        return value

    def result_fields(self) -> Dict[str, str]:
        return {
            "category": self.category,
            "schedule_start": self.schedule_start,
            "schedule_end": self.schedule_end,
            "peak_window": self.peak_window,
        }

    def to_wire(self) -> Dict[str, Any]:
        """Serializable representation, without the id (it lives in the key)."""
        document = {
            "data": self.encoded_payload,
            "timestamp": self.created_at,
            "owner": self.owner,
            "chronotype": self.category,
            "recommendedSleep": self.schedule_start,
            "recommendedWake": self.schedule_end,
            "productivityPeak": self.peak_window,
            "status": self.status.value,
        }
        if self.error is not None:
            document["error"] = self.error
        return document

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_wire()).encode('utf-8')

    @classmethod
    def from_bytes(cls, record_id: str, raw: bytes) -> 'AnalysisRecord':
        """Parse a stored value. Raises ``MalformedRecord`` on any problem."""
        key = record_key(record_id)
        try:
            document = json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedRecord(key, f"not JSON: {e}") from e

        if not isinstance(document, dict):
            raise MalformedRecord(key, "not a JSON object")

        status = document.get("status") or AnalysisStatus.PENDING.value
        analyzed = status == AnalysisStatus.ANALYZED.value

        def result_field(name: str, default: str) -> str:
            value = document.get(name) or ""
            return value or (default if analyzed else "")

        try:
            return cls(
                id=record_id,
                encoded_payload=document["data"],
                created_at=document["timestamp"],
                owner=document["owner"],
                category=result_field("chronotype", UNKNOWN_CATEGORY),
                schedule_start=result_field("recommendedSleep", DEFAULT_SCHEDULE_START),
                schedule_end=result_field("recommendedWake", DEFAULT_SCHEDULE_END),
                peak_window=result_field("productivityPeak", DEFAULT_PEAK_WINDOW),
                status=status,
                error=document.get("error"),
            )
        except KeyError as e:
            raise MalformedRecord(key, f"missing field {e}") from e
        except ValidationError as e:
            raise MalformedRecord(key, str(e)) from e
