"""Pydantic schemas for request/response validation."""
from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from esg_store.models.enums import EmissionScope, Scope2Method


# Organisation schemas
class OrganisationIn(BaseModel):
    """Upsert payload. ``id`` is the logical id; omit it to create."""
    id: Optional[UUID] = None
    name: str = Field(..., min_length=1, max_length=200)
    industry: Optional[str] = Field(None, max_length=100)
    country_code: Optional[str] = Field(None, min_length=2, max_length=2)
    organization_number: Optional[str] = Field(None, max_length=100)


# Reporting period schemas
class SocialIndicatorsIn(BaseModel):
    employee_count: int = Field(0, ge=0)
    percent_female_employees: float = Field(0.0, ge=0, le=100)
    total_hours_worked: float = Field(0.0, ge=0)
    training_hours: float = Field(0.0, ge=0)
    lost_time_injuries: float = Field(0.0, ge=0)


class GovernancePracticesIn(BaseModel):
    percent_female_board: float = Field(0.0, ge=0, le=100)
    anti_corruption_policy: bool = False
    data_privacy_policy: bool = False
    whistleblower_policy: bool = False
    notes: Optional[str] = Field(None, max_length=500)


class EnvironmentalActivityIn(BaseModel):
    scope: EmissionScope
    quantity: float = Field(0.0, ge=0)
    unit: str = Field("", max_length=50)
    category: str = Field("", max_length=200)
    emission_factor_kg_per_unit: float = Field(0.0, ge=0)
    co2e_kg: float = Field(0.0, ge=0)
    type_detail: Optional[str] = Field(None, max_length=100)
    scope2_method: Optional[Scope2Method] = None
    category_number: Optional[int] = Field(None, ge=1, le=15)
    description: Optional[str] = Field(None, max_length=300)

    @model_validator(mode="after")
    def _scope3_needs_category(self):
        if self.scope == EmissionScope.SCOPE3 and self.category_number is None:
            raise ValueError("scope 3 activities need a category_number (1..15)")
        return self


class ReportingPeriodIn(BaseModel):
    """
    Full reporting period graph as submitted by a caller.

    Children left as None are kept as stored; the activity list always
    replaces the stored collection.
    """
    id: Optional[UUID] = None
    organisation_id: UUID
    start_date: date
    end_date: date
    year: int = Field(..., ge=1900, le=9999)
    is_calendar_year: bool = True
    social_indicators: Optional[SocialIndicatorsIn] = None
    governance_practices: Optional[GovernancePracticesIn] = None
    environmental_activities: List[EnvironmentalActivityIn] = Field(default_factory=list)

    @model_validator(mode="after")
    def _dates_in_order(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


# Response schemas
class RevisionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    revision_group_id: UUID
    version: int
    is_active: bool
    created_at: datetime
    created_by: Optional[str]


class OrganisationOut(RevisionOut):
    name: str
    industry: Optional[str]
    country_code: Optional[str]
    organization_number: Optional[str]


class ReportingPeriodRowOut(RevisionOut):
    organisation_id: UUID
    start_date: date
    end_date: date
    year: int
    is_calendar_year: bool


class SocialIndicatorsOut(RevisionOut, SocialIndicatorsIn):
    reporting_period_id: UUID


class GovernancePracticesOut(RevisionOut, GovernancePracticesIn):
    reporting_period_id: UUID


class EnvironmentalActivityOut(RevisionOut):
    reporting_period_id: UUID
    scope: EmissionScope
    quantity: float
    unit: str
    category: str
    emission_factor_kg_per_unit: float
    co2e_kg: float
    type_detail: Optional[str]
    scope2_method: Optional[Scope2Method]
    category_number: Optional[int]
    description: Optional[str]


class ReportingPeriodOut(BaseModel):
    """A reporting period aggregate: the active revision of the root and its children."""
    model_config = ConfigDict(from_attributes=True)

    period: ReportingPeriodRowOut
    social_indicators: Optional[SocialIndicatorsOut]
    governance_practices: Optional[GovernancePracticesOut]
    environmental_activities: List[EnvironmentalActivityOut]


# Audit ledger schemas
class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    timestamp: datetime
    user_id: Optional[str]
    entity_name: str
    entity_id: UUID
    action: str
    payload_hash: str
    payload_json: Optional[str]


class AuditPageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    page: int
    page_size: int
    items: List[AuditEntryOut]
