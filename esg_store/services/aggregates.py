"""
Aggregate mappers: how one aggregate type is loaded, created and diff-applied.

The upsert orchestrator owns the transaction and retry loop; a mapper only
knows the shape of its aggregate and stages writes through the revision engine.
"""
import uuid
from dataclasses import dataclass, field
from typing import Any, List, Optional, Type

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from esg_store.api.schemas import OrganisationIn, ReportingPeriodIn
from esg_store.models.domain import (
    EnvironmentalActivity,
    GovernancePractices,
    Organisation,
    ReportingPeriod,
    SocialIndicators,
)
from esg_store.services.revision_engine import RevisionEngine


class InvalidAggregateError(ValueError):
    """
    Raised when caller input is malformed.

    Rejected before any persistence I/O and never retried.
    """
    def __init__(self, aggregate: str, message: str, errors: Optional[list] = None):
        self.aggregate = aggregate
        self.message = message
        self.errors = errors or []
        super().__init__(f"Invalid {aggregate}: {message}")


@dataclass
class ReportingPeriodAggregate:
    """Active revision of a reporting period plus its active children."""
    period: ReportingPeriod
    social_indicators: Optional[SocialIndicators] = None
    governance_practices: Optional[GovernancePractices] = None
    environmental_activities: List[EnvironmentalActivity] = field(default_factory=list)

    @property
    def id(self) -> uuid.UUID:
        return self.period.revision_group_id


class AggregateMapper:
    """Base mapper. Subclasses set ``schema`` and ``root_model`` and implement load/create/apply."""

    schema: Type[BaseModel]
    name: str = "aggregate"
    # Versioned table holding the aggregate root's revisions
    root_model: Type

    def validate(self, incoming: Any) -> BaseModel:
        """
        Validate caller input into the mapper's schema.

        An input without an id is given a fresh logical id, so retries of a
        create reload the same aggregate.
        """
        if isinstance(incoming, BaseModel):
            incoming = incoming.model_dump()
        if not isinstance(incoming, dict):
            raise InvalidAggregateError(self.name, f"expected a mapping, got {type(incoming).__name__}")
        try:
            validated = self.schema.model_validate(incoming)
        except ValidationError as exc:
            raise InvalidAggregateError(self.name, "validation failed", exc.errors()) from exc
        if validated.id is None:
            validated = validated.model_copy(update={"id": uuid.uuid4()})
        return validated

    def load(self, session: Session, aggregate_id: uuid.UUID):
        raise NotImplementedError

    def create(self, session: Session, engine: RevisionEngine, incoming, user_id: Optional[str]):
        raise NotImplementedError

    def apply(
        self,
        session: Session,
        engine: RevisionEngine,
        existing,
        incoming,
        user_id: Optional[str],
        force_replace: bool = False,
    ):
        raise NotImplementedError


class OrganisationMapper(AggregateMapper):
    """An organisation is a single-record aggregate."""

    schema = OrganisationIn
    name = "Organisation"
    root_model = Organisation

    def load(self, session, aggregate_id):
        return session.scalars(
            select(Organisation).where(Organisation.revision_group_id == aggregate_id)
        ).first()

    def create(self, session, engine, incoming, user_id):
        organisation = Organisation(revision_group_id=incoming.id, **self._values(incoming))
        return engine.add(session, organisation, user_id)

    def apply(self, session, engine, existing, incoming, user_id, force_replace=False):
        return engine.revise(session, existing, user_id, **self._values(incoming))

    @staticmethod
    def _values(incoming: OrganisationIn) -> dict:
        return incoming.model_dump(include=set(Organisation.business_fields))


class ReportingPeriodMapper(AggregateMapper):
    """
    Reporting period with social, governance and environmental children.

    The root row doubles as the aggregate's concurrency token: any upsert that
    writes children also writes a new root revision, so two writers saving the
    same period always collide on the root instead of interleaving children.
    """

    schema = ReportingPeriodIn
    name = "ReportingPeriod"
    root_model = ReportingPeriod

    def load(self, session, aggregate_id):
        period = session.scalars(
            select(ReportingPeriod).where(ReportingPeriod.revision_group_id == aggregate_id)
        ).first()
        if period is None:
            return None

        return ReportingPeriodAggregate(
            period=period,
            social_indicators=self._child(session, SocialIndicators, aggregate_id),
            governance_practices=self._child(session, GovernancePractices, aggregate_id),
            environmental_activities=list(
                session.scalars(
                    select(EnvironmentalActivity)
                    .where(EnvironmentalActivity.reporting_period_id == aggregate_id)
                    .order_by(EnvironmentalActivity.created_at, EnvironmentalActivity.id)
                ).all()
            ),
        )

    def create(self, session, engine, incoming, user_id):
        period = engine.add(
            session,
            ReportingPeriod(revision_group_id=incoming.id, **self._period_values(incoming)),
            user_id,
        )
        aggregate = ReportingPeriodAggregate(period=period)
        if incoming.social_indicators is not None:
            aggregate.social_indicators = engine.add(
                session,
                SocialIndicators(reporting_period_id=incoming.id, **incoming.social_indicators.model_dump()),
                user_id,
            )
        if incoming.governance_practices is not None:
            aggregate.governance_practices = engine.add(
                session,
                GovernancePractices(reporting_period_id=incoming.id, **incoming.governance_practices.model_dump()),
                user_id,
            )
        aggregate.environmental_activities = self._insert_activities(session, engine, incoming, user_id)
        return aggregate

    def apply(self, session, engine, existing, incoming, user_id, force_replace=False):
        touches_children = bool(
            incoming.social_indicators is not None
            or incoming.governance_practices is not None
            or existing.environmental_activities
            or incoming.environmental_activities
        )
        period = engine.revise(
            session,
            existing.period,
            user_id,
            force=touches_children,
            **self._period_values(incoming),
        )

        aggregate = ReportingPeriodAggregate(period=period)
        aggregate.social_indicators = self._apply_single(
            session, engine, SocialIndicators, existing.social_indicators,
            incoming.social_indicators, incoming.id, user_id, force_replace,
        )
        aggregate.governance_practices = self._apply_single(
            session, engine, GovernancePractices, existing.governance_practices,
            incoming.governance_practices, incoming.id, user_id, force_replace,
        )

        # Collections are replaced wholesale: retire every stored row, insert the incoming set
        for activity in existing.environmental_activities:
            engine.deactivate(session, activity, user_id)
        aggregate.environmental_activities = self._insert_activities(session, engine, incoming, user_id)
        return aggregate

    @staticmethod
    def _child(session, model, period_id):
        return session.scalars(
            select(model).where(model.reporting_period_id == period_id).order_by(model.created_at)
        ).first()

    @staticmethod
    def _period_values(incoming: ReportingPeriodIn) -> dict:
        return incoming.model_dump(include=set(ReportingPeriod.business_fields))

    @staticmethod
    def _apply_single(session, engine, model, current, incoming, period_id, user_id, force_replace):
        """Update a single-valued child in place, or insert it if missing."""
        if incoming is None:
            return current
        values = dict(incoming.model_dump(), reporting_period_id=period_id)
        if current is None:
            return engine.add(session, model(**values), user_id)
        # After a conflict the reloaded child may be stale: rewrite it in full
        return engine.revise(session, current, user_id, force=force_replace, **values)

    @staticmethod
    def _insert_activities(session, engine, incoming, user_id) -> List[EnvironmentalActivity]:
        return [
            engine.add(
                session,
                EnvironmentalActivity(reporting_period_id=incoming.id, **activity.model_dump()),
                user_id,
            )
            for activity in incoming.environmental_activities
        ]
