# src/core/schemas.py
from datetime import datetime, timezone
from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)

# --- Records ---

class Record(BaseModel):
    id: str = Field(..., description="Airtable record ID (e.g. recXXXXXXXXXXXXXX). Assigned by Airtable, immutable.")
    fields: Dict[str, Any] = Field(default_factory=dict, description="Column name to value. Columns are defined by the base, not by this service.")
    createdTime: datetime = Field(default_factory=_utc_now, description="Creation timestamp reported by Airtable.")

    @classmethod
    def from_airtable(cls, raw: Dict[str, Any]) -> "Record":
        # Airtable omits createdTime on some responses; fall back to now.
        return cls(
            id=raw["id"],
            fields=raw.get("fields") or {},
            createdTime=raw.get("createdTime") or _utc_now(),
        )

# --- Request Schemas ---

class CreateRecordItem(BaseModel):
    fields: Dict[str, Any] = Field(..., description="Field values for the new record.")

class UpdateRecordItem(BaseModel):
    id: str = Field(..., min_length=1, description="ID of the record to update.")
    fields: Dict[str, Any] = Field(..., description="Field values to overwrite. Fields not listed are left untouched.")

    @field_validator("id")
    @classmethod
    def id_must_not_be_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("id must be a non-empty string")
        return v

class RecordFieldsPayload(BaseModel):
    fields: Dict[str, Any] = Field(..., description="Field values for a single-record create or update.")

# --- Response Schemas ---

class RecordListResponse(BaseModel):
    records: List[Record]

class BulkWriteResponse(BaseModel):
    records: List[Record]
    count: int
    message: str

class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

class ErrorResponse(BaseModel):
    error: ErrorBody
    timestamp: str
    requestId: str

class AirtableTable(BaseModel):
    id: str
    name: str
    primaryFieldId: Optional[str] = None
