"""Pytest configuration and shared fixtures."""
import os

# Keep the application's default engine off the working directory
os.environ.setdefault("ESG_DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine

from esg_store.database import Base, make_session_factory
from esg_store.models.audit import AuditEntry  # noqa: F401
from esg_store.models.domain import Organisation
from esg_store.services.aggregates import OrganisationMapper, ReportingPeriodMapper
from esg_store.services.revision_engine import RevisionEngine
from esg_store.services.upsert import UpsertOrchestrator


@pytest.fixture
def db_engine(tmp_path):
    """
    Create a fresh file-backed SQLite database for each test.

    File-backed so that independent sessions (and threads) see each other's commits.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'esg.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def revision_engine():
    return RevisionEngine()


@pytest.fixture
def organisations(session_factory):
    return UpsertOrchestrator(session_factory, OrganisationMapper())


@pytest.fixture
def reporting_periods(session_factory):
    return UpsertOrchestrator(session_factory, ReportingPeriodMapper())


@pytest.fixture
def sample_organisation(db_session, revision_engine):
    """Create a basic organisation at version 1."""
    organisation = Organisation(
        name="Acme",
        industry="Manufacturing",
        country_code="DK",
        organization_number="DK-12345678",
    )
    revision_engine.add(db_session, organisation, user_id="user_123")
    db_session.commit()
    return organisation


@pytest.fixture
def period_payload(sample_organisation):
    """A complete reporting period graph for the sample organisation."""
    return {
        "organisation_id": str(sample_organisation.revision_group_id),
        "start_date": "2030-01-01",
        "end_date": "2030-12-31",
        "year": 2030,
        "social_indicators": {
            "employee_count": 42,
            "percent_female_employees": 40.0,
            "total_hours_worked": 80000,
            "training_hours": 1200,
            "lost_time_injuries": 1,
        },
        "governance_practices": {
            "percent_female_board": 33.3,
            "anti_corruption_policy": True,
            "data_privacy_policy": True,
            "whistleblower_policy": False,
        },
        "environmental_activities": [
            {
                "scope": 1,
                "quantity": 1000,
                "unit": "L",
                "category": "Fuel/Diesel",
                "emission_factor_kg_per_unit": 2.68,
                "co2e_kg": 2680,
                "type_detail": "Diesel",
            },
            {
                "scope": 2,
                "quantity": 50000,
                "unit": "kWh",
                "category": "Electricity/Grid",
                "emission_factor_kg_per_unit": 0.12,
                "co2e_kg": 6000,
                "scope2_method": "LocationBased",
            },
        ],
    }
