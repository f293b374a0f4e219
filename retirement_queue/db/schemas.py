"""
Pydantic validation schemas
"""
from datetime import date, datetime
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from retirement_queue.db.models import ProcessingStatus, RetirementStatus
from retirement_queue.utils.helpers import only_digits

# ============================================================================
# Classifier verdict
# ============================================================================

class Verdict(BaseModel):
    """
    Structured classifier output for one case.

    Dates stay as strings here; the retirement hook parses them so a bad
    date aborts the analysis transaction instead of the classifier call.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    is_retirement: bool = Field(validation_alias=AliasChoices("is_retirement", "aposentadoria"))
    requester_id: str = Field(validation_alias=AliasChoices("requester_id", "cpf_requerente"))
    request_date: str = Field(validation_alias=AliasChoices("request_date", "data_requerimento"))
    birth_date: str = Field(
        validation_alias=AliasChoices("birth_date", "data_nascimento_requerente")
    )
    judicial: bool
    invalidity: bool = Field(validation_alias=AliasChoices("invalidity", "invalidez"))
    diligence_responsible_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("diligence_responsible_id", "cpf_responsavel_diligencia"),
    )

    @field_validator("requester_id", mode="before")
    @classmethod
    def normalise_requester(cls, v):
        if isinstance(v, str):
            return only_digits(v)
        return v

    @field_validator("diligence_responsible_id", mode="before")
    @classmethod
    def normalise_diligence(cls, v):
        if isinstance(v, str):
            return only_digits(v) or None
        return v


# ============================================================================
# Case Schemas
# ============================================================================

class CaseCreate(BaseModel):
    number: str = Field(..., min_length=1, max_length=64)

    @field_validator("number")
    @classmethod
    def strip_number(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Case number must not be blank")
        return v


class CaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    number: str
    unit_id: str
    unit_abbrev: str
    access_link: str
    status_processing: ProcessingStatus
    classification: Optional[bool] = None
    analysed_at: Optional[datetime] = None
    classifier_metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    case_id: UUID
    number: str
    type: str
    unit: str
    access_link: str
    mime_type: str
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="raw_metadata")
    created_at: datetime


class AnalyzeResponse(BaseModel):
    inserted: bool


# ============================================================================
# Retirement Case Schemas
# ============================================================================

class RetirementCaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    case_id: UUID
    requester_id: str
    birth_date: date
    request_date: date
    invalidity: bool
    judicial: bool
    priority: bool
    score: int
    status: RetirementStatus
    diligence_responsible_id: Optional[str] = None
    assigned_analyst_id: Optional[str] = None
    last_analyst_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class StatusHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    retirement_case_id: int
    previous_status: Optional[RetirementStatus] = None
    new_status: RetirementStatus
    user_id: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime


class StatusChangeRequest(BaseModel):
    status: RetirementStatus
    user_id: Optional[str] = None
    note: Optional[str] = Field(None, max_length=2000)


# ============================================================================
# CMS / Data lake Schemas
# ============================================================================

class UnitResponse(BaseModel):
    id: str
    abbrev: str
    description: str = ""


class OpenCaseResponse(BaseModel):
    number: str
    unit_abbrev: str
    received_at: Optional[datetime] = None
    origin_unit_id: Optional[str] = None
    origin_unit_abbrev: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    checks: Dict[str, str] = Field(default_factory=dict)

