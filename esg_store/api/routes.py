"""API routes over the versioned store: aggregate upserts/reads and the audit ledger."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from esg_store.api.schemas import (
    AuditPageOut,
    OrganisationIn,
    OrganisationOut,
    ReportingPeriodIn,
    ReportingPeriodOut,
)
from esg_store.database import SessionLocal, get_db
from esg_store.services.aggregates import InvalidAggregateError, OrganisationMapper, ReportingPeriodMapper
from esg_store.services.audit_recorder import AuditRecorder
from esg_store.services.upsert import AggregateDeactivatedError, UpsertFailedError, UpsertOrchestrator

router = APIRouter()


def get_organisations() -> UpsertOrchestrator:
    return UpsertOrchestrator(SessionLocal, OrganisationMapper())


def get_reporting_periods() -> UpsertOrchestrator:
    return UpsertOrchestrator(SessionLocal, ReportingPeriodMapper())


def get_audit_recorder() -> AuditRecorder:
    return AuditRecorder()


def _upsert(orchestrator: UpsertOrchestrator, payload, user_id: Optional[str]):
    try:
        result = orchestrator.upsert(payload, user_id=user_id)
    except InvalidAggregateError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": e.message, "errors": e.errors},
        )
    except AggregateDeactivatedError as e:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(e))
    except UpsertFailedError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.message)
    if result is None:
        # The aggregate vanished while saving
        raise HTTPException(status_code=404, detail=f"{orchestrator.mapper.name} not found")
    return result


# Organisation endpoints
@router.put("/organisations", response_model=OrganisationOut)
def upsert_organisation(
    organisation: OrganisationIn,
    x_user_id: Optional[str] = Header(None),
    organisations: UpsertOrchestrator = Depends(get_organisations),
):
    """Create or update an organisation. Each change appends a new revision."""
    return _upsert(organisations, organisation, x_user_id)


@router.get("/organisations/{organisation_id}", response_model=OrganisationOut)
def get_organisation(
    organisation_id: UUID,
    organisations: UpsertOrchestrator = Depends(get_organisations),
):
    """Get the active revision of an organisation."""
    organisation = organisations.get(organisation_id)
    if organisation is None:
        raise HTTPException(status_code=404, detail="Organisation not found")
    return organisation


# Reporting period endpoints
@router.put("/reporting-periods", response_model=ReportingPeriodOut)
def upsert_reporting_period(
    period: ReportingPeriodIn,
    x_user_id: Optional[str] = Header(None),
    reporting_periods: UpsertOrchestrator = Depends(get_reporting_periods),
):
    """
    Create or update a reporting period with its indicators and activities.
    The activity list replaces the stored one.
    """
    aggregate = _upsert(reporting_periods, period, x_user_id)
    return ReportingPeriodOut.model_validate(aggregate)


@router.get("/reporting-periods/{period_id}", response_model=ReportingPeriodOut)
def get_reporting_period(
    period_id: UUID,
    reporting_periods: UpsertOrchestrator = Depends(get_reporting_periods),
):
    """Get the active revision of a reporting period and its children."""
    aggregate = reporting_periods.get(period_id)
    if aggregate is None:
        raise HTTPException(status_code=404, detail="Reporting period not found")
    return ReportingPeriodOut.model_validate(aggregate)


# Audit ledger endpoint
@router.get("/audit-logs", response_model=AuditPageOut)
def list_audit_entries(
    entity: Optional[str] = None,
    page: int = 1,
    page_size: int = Query(200, alias="pageSize"),
    db: Session = Depends(get_db),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    """List audit entries, newest first. Read-only."""
    entries = recorder.list_entries(db, entity_name=entity, page=page, page_size=page_size)
    return AuditPageOut.model_validate(entries)
