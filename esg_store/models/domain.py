"""
Domain models - the versioned entities of a sustainability disclosure.

References between records hold the referenced record's logical id
(its revision_group_id), so revising a parent never orphans its children.
"""
from sqlalchemy import Boolean, Column, Date, Enum as SQLEnum, Float, Integer, String, Uuid

from esg_store.database import Base
from esg_store.models.enums import EmissionScope, Scope2Method
from esg_store.models.revisioned import RevisionedRecord


class Organisation(RevisionedRecord, Base):
    """A legal entity reporting on the platform."""
    __tablename__ = "organisations"

    name = Column(String(200), nullable=False)
    industry = Column(String(100), nullable=True)
    country_code = Column(String(2), nullable=True)
    organization_number = Column(String(100), nullable=True)

    business_fields = ("name", "industry", "country_code", "organization_number")

    def audit_payload(self) -> dict:
        payload = self.revision_payload()
        payload.update(
            name=self.name,
            industry=self.industry,
            country_code=self.country_code,
            organization_number=self.organization_number,
        )
        return payload


class ReportingPeriod(RevisionedRecord, Base):
    """
    A reporting period (e.g. a fiscal year) - the aggregate root.

    Owns at most one SocialIndicators, at most one GovernancePractices and
    any number of EnvironmentalActivity rows.
    """
    __tablename__ = "reporting_periods"

    organisation_id = Column(Uuid, nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    year = Column(Integer, nullable=False)
    is_calendar_year = Column(Boolean, nullable=False, default=True)

    business_fields = ("organisation_id", "start_date", "end_date", "year", "is_calendar_year")

    def audit_payload(self) -> dict:
        payload = self.revision_payload()
        payload.update(
            organisation_id=self.organisation_id,
            start_date=self.start_date,
            end_date=self.end_date,
            year=self.year,
            is_calendar_year=self.is_calendar_year,
        )
        return payload


class SocialIndicators(RevisionedRecord, Base):
    """Social indicators aligned with VSME social disclosures."""
    __tablename__ = "social_indicators"

    reporting_period_id = Column(Uuid, nullable=False, index=True)
    employee_count = Column(Integer, nullable=False, default=0)
    percent_female_employees = Column(Float, nullable=False, default=0.0)
    total_hours_worked = Column(Float, nullable=False, default=0.0)
    training_hours = Column(Float, nullable=False, default=0.0)
    lost_time_injuries = Column(Float, nullable=False, default=0.0)

    business_fields = (
        "reporting_period_id",
        "employee_count",
        "percent_female_employees",
        "total_hours_worked",
        "training_hours",
        "lost_time_injuries",
    )

    def audit_payload(self) -> dict:
        payload = self.revision_payload()
        payload.update(self.business_values())
        return payload


class GovernancePractices(RevisionedRecord, Base):
    """Governance-related practices and indicators."""
    __tablename__ = "governance_practices"

    reporting_period_id = Column(Uuid, nullable=False, index=True)
    percent_female_board = Column(Float, nullable=False, default=0.0)
    anti_corruption_policy = Column(Boolean, nullable=False, default=False)
    data_privacy_policy = Column(Boolean, nullable=False, default=False)
    whistleblower_policy = Column(Boolean, nullable=False, default=False)
    notes = Column(String(500), nullable=True)

    business_fields = (
        "reporting_period_id",
        "percent_female_board",
        "anti_corruption_policy",
        "data_privacy_policy",
        "whistleblower_policy",
        "notes",
    )

    def audit_payload(self) -> dict:
        payload = self.revision_payload()
        payload.update(self.business_values())
        return payload


class EnvironmentalActivity(RevisionedRecord, Base):
    """
    An activity contributing to GHG emissions.

    Scope-specific columns:
    - scope 1: type_detail (fuel type, e.g. Diesel)
    - scope 2: scope2_method
    - scope 3: category_number (GHG Protocol category 1..15), description
    """
    __tablename__ = "environmental_activities"

    reporting_period_id = Column(Uuid, nullable=False, index=True)
    scope = Column(SQLEnum(EmissionScope), nullable=False)
    quantity = Column(Float, nullable=False, default=0.0)
    unit = Column(String(50), nullable=False, default="")  # L, kWh, km, kg, tkm, EUR
    category = Column(String(200), nullable=False, default="")  # e.g. "Fuel/Diesel"
    emission_factor_kg_per_unit = Column(Float, nullable=False, default=0.0)
    co2e_kg = Column(Float, nullable=False, default=0.0)

    type_detail = Column(String(100), nullable=True)
    scope2_method = Column(SQLEnum(Scope2Method), nullable=True)
    category_number = Column(Integer, nullable=True)
    description = Column(String(300), nullable=True)

    business_fields = (
        "reporting_period_id",
        "scope",
        "quantity",
        "unit",
        "category",
        "emission_factor_kg_per_unit",
        "co2e_kg",
        "type_detail",
        "scope2_method",
        "category_number",
        "description",
    )

    def audit_payload(self) -> dict:
        payload = self.revision_payload()
        payload.update(self.business_values())
        return payload
