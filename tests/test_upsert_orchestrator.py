"""
Tests for the upsert orchestrator.

These tests prove:
- Creates and updates go through one transaction per attempt
- Write conflicts are retried against the reloaded aggregate
- Callers never see a raw concurrency error
- Invalid input is rejected before any persistence I/O
"""
import threading
import uuid

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from esg_store.models.audit import AuditEntry
from esg_store.models.domain import EnvironmentalActivity, Organisation, ReportingPeriod, SocialIndicators
from esg_store.services.aggregates import InvalidAggregateError, OrganisationMapper, ReportingPeriodMapper
from esg_store.services.revision_engine import RevisionEngine
from esg_store.services.upsert import (
    AggregateDeactivatedError,
    UpsertCancelledError,
    UpsertFailedError,
    UpsertOrchestrator,
)


class RivalOrganisationMapper(OrganisationMapper):
    """Commits a competing rename from another session before applying the caller's diff."""

    def __init__(self, session_factory, rival_writes=1, deactivate=False):
        self.session_factory = session_factory
        self.rival_writes = rival_writes
        self.deactivate = deactivate
        self.applied = 0

    def apply(self, session, engine, existing, incoming, user_id, force_replace=False):
        self.applied += 1
        if self.rival_writes > 0:
            self.rival_writes -= 1
            rival_engine = RevisionEngine()
            with self.session_factory() as other:
                current = self.load(other, existing.revision_group_id)
                if self.deactivate:
                    rival_engine.deactivate(other, current, "rival")
                else:
                    rival_engine.revise(other, current, "rival", name=f"Rival {self.applied}")
                other.commit()
        return super().apply(session, engine, existing, incoming, user_id, force_replace)


class FailingMapper(OrganisationMapper):
    def __init__(self, exc):
        self.exc = exc
        self.applied = 0

    def apply(self, session, engine, existing, incoming, user_id, force_replace=False):
        self.applied += 1
        raise self.exc


def _no_io():
    raise AssertionError("no session should be opened")


class TestOrganisationUpsert:
    """Test the single-record aggregate."""

    def test_create(self, organisations):
        organisation = organisations.upsert({"name": "Acme", "country_code": "DK"}, user_id="user_123")

        assert organisation.version == 1
        assert organisation.is_active is True
        assert organisation.created_by == "user_123"
        assert organisations.get(organisation.revision_group_id).name == "Acme"

    def test_create_with_given_id(self, organisations):
        group_id = uuid.uuid4()
        organisation = organisations.upsert({"id": str(group_id), "name": "Acme"})

        assert organisation.revision_group_id == group_id

    def test_update_appends_a_revision(self, organisations):
        created = organisations.upsert({"name": "Acme"})
        updated = organisations.upsert({"id": created.revision_group_id, "name": "Acme A/S"})

        assert updated.version == 2
        assert updated.revision_group_id == created.revision_group_id
        assert updated.id != created.id
        assert organisations.get(created.revision_group_id).name == "Acme A/S"

    def test_unchanged_upsert_writes_nothing(self, organisations, db_session):
        created = organisations.upsert({"name": "Acme"})
        again = organisations.upsert({"id": created.revision_group_id, "name": "Acme"})

        assert again.version == 1
        assert db_session.query(AuditEntry).count() == 1

    def test_get_unknown_returns_none(self, organisations):
        assert organisations.get(uuid.uuid4()) is None


class TestValidation:
    """Malformed input never reaches the store."""

    def test_invalid_input_is_rejected_before_io(self):
        orchestrator = UpsertOrchestrator(_no_io, OrganisationMapper(), max_attempts=3)

        with pytest.raises(InvalidAggregateError) as exc_info:
            orchestrator.upsert({"name": ""})
        assert exc_info.value.aggregate == "Organisation"
        assert exc_info.value.errors

    def test_non_mapping_input_is_rejected(self):
        orchestrator = UpsertOrchestrator(_no_io, OrganisationMapper(), max_attempts=3)

        with pytest.raises(InvalidAggregateError):
            orchestrator.upsert(["Acme"])

    def test_reporting_period_dates_must_be_ordered(self, period_payload):
        orchestrator = UpsertOrchestrator(_no_io, ReportingPeriodMapper(), max_attempts=3)
        period_payload["end_date"] = "2029-12-31"

        with pytest.raises(InvalidAggregateError):
            orchestrator.upsert(period_payload)

    def test_scope3_activity_needs_category(self, period_payload):
        orchestrator = UpsertOrchestrator(_no_io, ReportingPeriodMapper(), max_attempts=3)
        period_payload["environmental_activities"] = [{"scope": 3, "quantity": 10, "unit": "km"}]

        with pytest.raises(InvalidAggregateError):
            orchestrator.upsert(period_payload)

    def test_max_attempts_must_be_positive(self, session_factory):
        with pytest.raises(ValueError):
            UpsertOrchestrator(session_factory, OrganisationMapper(), max_attempts=0)


class TestRetry:
    """Write conflicts are absorbed by reloading and re-applying."""

    def test_conflict_is_retried_against_the_reloaded_state(self, session_factory, organisations):
        created = organisations.upsert({"name": "Acme"})
        mapper = RivalOrganisationMapper(session_factory, rival_writes=1)
        orchestrator = UpsertOrchestrator(session_factory, mapper, max_attempts=3)

        result = orchestrator.upsert({"id": created.revision_group_id, "name": "Mine"})

        assert mapper.applied == 2
        assert result.name == "Mine"
        assert result.version == 3
        with session_factory() as session:
            rows = RevisionEngine().history(session, Organisation, created.revision_group_id)
            assert [(row.name, row.is_active) for row in rows] == [
                ("Acme", False),
                ("Rival 1", False),
                ("Mine", True),
            ]

    def test_exhausted_retries_return_latest_state(self, session_factory, organisations):
        created = organisations.upsert({"name": "Acme"})
        mapper = RivalOrganisationMapper(session_factory, rival_writes=2)
        orchestrator = UpsertOrchestrator(session_factory, mapper, max_attempts=2)

        result = orchestrator.upsert({"id": created.revision_group_id, "name": "Mine"})

        assert mapper.applied == 2
        assert result.name == "Rival 2"
        assert result.version == 3

    def test_vanished_aggregate_returns_latest_state_instead_of_raising(self, session_factory, organisations):
        """If the aggregate disappears between attempts the caller gets its latest state: nothing."""
        created = organisations.upsert({"name": "Acme"})
        mapper = RivalOrganisationMapper(session_factory, rival_writes=1, deactivate=True)
        orchestrator = UpsertOrchestrator(session_factory, mapper, max_attempts=3)

        result = orchestrator.upsert({"id": created.revision_group_id, "name": "Mine"})

        assert result is None
        assert mapper.applied == 1
        assert organisations.get(created.revision_group_id) is None

    def test_other_errors_propagate_without_retry(self, session_factory, organisations):
        created = organisations.upsert({"name": "Acme"})
        mapper = FailingMapper(RuntimeError("boom"))
        orchestrator = UpsertOrchestrator(session_factory, mapper, max_attempts=3)

        with pytest.raises(RuntimeError):
            orchestrator.upsert({"id": created.revision_group_id, "name": "Mine"})
        assert mapper.applied == 1
        assert organisations.get(created.revision_group_id).version == 1

    def test_storage_errors_are_wrapped_without_retry(self, session_factory, organisations):
        created = organisations.upsert({"name": "Acme"})
        storage_error = OperationalError("UPDATE organisations ...", {}, Exception("disk I/O error"))
        mapper = FailingMapper(storage_error)
        orchestrator = UpsertOrchestrator(session_factory, mapper, max_attempts=3)

        with pytest.raises(UpsertFailedError) as exc_info:
            orchestrator.upsert({"id": created.revision_group_id, "name": "Mine"})

        assert mapper.applied == 1
        assert exc_info.value.aggregate == "Organisation"
        assert exc_info.value.aggregate_id == created.revision_group_id
        assert exc_info.value.__cause__ is storage_error
        assert organisations.get(created.revision_group_id).version == 1

    def test_deactivated_aggregate_is_refused_without_retry(
        self, session_factory, db_session, revision_engine, organisations
    ):
        created = organisations.upsert({"name": "Acme"})
        current = db_session.scalars(
            select(Organisation).where(Organisation.revision_group_id == created.revision_group_id)
        ).one()
        revision_engine.deactivate(db_session, current)
        db_session.commit()
        audit_count = db_session.query(AuditEntry).count()

        with pytest.raises(AggregateDeactivatedError) as exc_info:
            organisations.upsert({"id": created.revision_group_id, "name": "Acme again"})

        assert exc_info.value.aggregate_id == created.revision_group_id
        rows = revision_engine.history(db_session, Organisation, created.revision_group_id)
        assert [(row.version, row.is_active) for row in rows] == [(1, False)]
        assert db_session.query(AuditEntry).count() == audit_count

    def test_deactivated_reporting_period_is_refused(
        self, session_factory, revision_engine, reporting_periods, period_payload
    ):
        created = reporting_periods.upsert(period_payload)
        with session_factory() as session:
            aggregate = reporting_periods.mapper.load(session, created.id)
            revision_engine.deactivate(session, aggregate.period)
            session.commit()

        period_payload["id"] = str(created.id)
        with pytest.raises(AggregateDeactivatedError):
            reporting_periods.upsert(period_payload)


class TestCancellation:

    def test_cancelled_before_start(self, organisations):
        cancel = threading.Event()
        cancel.set()
        group_id = uuid.uuid4()

        with pytest.raises(UpsertCancelledError):
            organisations.upsert({"id": group_id, "name": "Acme"}, cancel_event=cancel)
        assert organisations.get(group_id) is None

    def test_cancelled_mid_attempt_commits_nothing(self, session_factory, organisations):
        created = organisations.upsert({"name": "Acme"})
        cancel = threading.Event()

        class CancellingMapper(OrganisationMapper):
            def apply(self, *args, **kwargs):
                result = super().apply(*args, **kwargs)
                cancel.set()
                return result

        orchestrator = UpsertOrchestrator(session_factory, CancellingMapper(), max_attempts=3)
        with pytest.raises(UpsertCancelledError):
            orchestrator.upsert({"id": created.revision_group_id, "name": "Mine"}, cancel_event=cancel)

        current = organisations.get(created.revision_group_id)
        assert current.version == 1
        assert current.name == "Acme"


class TestReportingPeriodUpsert:
    """Test the multi-record aggregate."""

    def test_create_full_graph(self, reporting_periods, period_payload):
        aggregate = reporting_periods.upsert(period_payload, user_id="user_123")

        assert aggregate.period.version == 1
        assert aggregate.period.year == 2030
        assert aggregate.social_indicators.employee_count == 42
        assert aggregate.social_indicators.reporting_period_id == aggregate.id
        assert aggregate.governance_practices.anti_corruption_policy is True
        assert len(aggregate.environmental_activities) == 2

        loaded = reporting_periods.get(aggregate.id)
        assert loaded.period.id == aggregate.period.id
        assert loaded.social_indicators.id == aggregate.social_indicators.id
        assert {a.category for a in loaded.environmental_activities} == {"Fuel/Diesel", "Electricity/Grid"}

    def test_child_is_revised_in_place(self, reporting_periods, period_payload):
        created = reporting_periods.upsert(period_payload)
        period_payload["id"] = str(created.id)
        period_payload["social_indicators"]["employee_count"] = 50

        updated = reporting_periods.upsert(period_payload)

        assert updated.social_indicators.version == 2
        assert updated.social_indicators.revision_group_id == created.social_indicators.revision_group_id
        assert updated.social_indicators.employee_count == 50
        # Unchanged child keeps its revision
        assert updated.governance_practices.id == created.governance_practices.id
        # The root always moves when children are written
        assert updated.period.version == 2

    def test_missing_child_is_left_untouched(self, reporting_periods, period_payload):
        created = reporting_periods.upsert(period_payload)
        period_payload["id"] = str(created.id)
        period_payload["social_indicators"] = None

        updated = reporting_periods.upsert(period_payload)

        assert updated.social_indicators.id == created.social_indicators.id
        assert reporting_periods.get(created.id).social_indicators.employee_count == 42

    def test_child_can_be_added_later(self, reporting_periods, period_payload):
        governance = period_payload.pop("governance_practices")
        created = reporting_periods.upsert(period_payload)
        assert created.governance_practices is None

        period_payload["id"] = str(created.id)
        period_payload["governance_practices"] = governance
        updated = reporting_periods.upsert(period_payload)

        assert updated.governance_practices.version == 1
        assert updated.governance_practices.reporting_period_id == created.id

    def test_activities_are_replaced(self, session_factory, reporting_periods, period_payload):
        created = reporting_periods.upsert(period_payload)
        period_payload["id"] = str(created.id)
        period_payload["environmental_activities"] = [
            {"scope": 3, "quantity": 1200, "unit": "km", "category": "Business travel", "category_number": 6},
        ]

        updated = reporting_periods.upsert(period_payload)

        assert [a.category_number for a in updated.environmental_activities] == [6]
        loaded = reporting_periods.get(created.id)
        assert [a.category for a in loaded.environmental_activities] == ["Business travel"]

        with session_factory() as session:
            for old in created.environmental_activities:
                rows = RevisionEngine().history(session, EnvironmentalActivity, old.revision_group_id)
                assert [(row.version, row.is_active) for row in rows] == [(1, False)]

    def test_empty_activity_list_clears_collection(self, reporting_periods, period_payload):
        created = reporting_periods.upsert(period_payload)
        period_payload["id"] = str(created.id)
        period_payload["environmental_activities"] = []

        reporting_periods.upsert(period_payload)

        assert reporting_periods.get(created.id).environmental_activities == []

    def test_period_fields_only_change_root(self, reporting_periods, period_payload):
        period_payload.pop("social_indicators")
        period_payload.pop("governance_practices")
        period_payload["environmental_activities"] = []
        created = reporting_periods.upsert(period_payload)

        period_payload["id"] = str(created.id)
        period_payload["year"] = 2031
        updated = reporting_periods.upsert(period_payload)

        assert updated.period.version == 2
        assert updated.period.year == 2031
        assert updated.period.revision_group_id == created.id

    def test_every_write_in_the_graph_is_audited(self, db_session, reporting_periods, period_payload):
        before = db_session.query(AuditEntry).count()
        reporting_periods.upsert(period_payload)

        # period + social + governance + two activities
        assert db_session.query(AuditEntry).count() == before + 5
        names = db_session.scalars(
            select(AuditEntry.entity_name).where(AuditEntry.entity_name != "Organisation")
        ).all()
        assert sorted(names) == [
            "EnvironmentalActivity",
            "EnvironmentalActivity",
            "GovernancePractices",
            "ReportingPeriod",
            "SocialIndicators",
        ]

    def test_conflict_rewrites_children_in_full(self, session_factory, reporting_periods, period_payload):
        """After a conflict the reloaded children are rewritten rather than merged."""
        created = reporting_periods.upsert(period_payload)
        rival_payload = dict(period_payload, id=str(created.id), year=2031)

        class RivalPeriodMapper(ReportingPeriodMapper):
            rival_done = False

            def apply(self, *args, **kwargs):
                if not self.rival_done:
                    self.rival_done = True
                    UpsertOrchestrator(session_factory, ReportingPeriodMapper(), max_attempts=1).upsert(rival_payload)
                return super().apply(*args, **kwargs)

        orchestrator = UpsertOrchestrator(session_factory, RivalPeriodMapper(), max_attempts=3)
        mine = dict(period_payload, id=str(created.id), year=2040)
        result = orchestrator.upsert(mine)

        assert result.period.year == 2040
        assert result.period.version == 3
        assert result.social_indicators.version == 2
        assert result.governance_practices.version == 2

        with session_factory() as session:
            periods = RevisionEngine().history(session, ReportingPeriod, created.id)
            assert [row.version for row in periods] == [1, 2, 3]
            assert [row.is_active for row in periods] == [False, False, True]
            social = session.scalars(
                select(SocialIndicators).where(SocialIndicators.reporting_period_id == created.id)
            ).all()
            assert len(social) == 1
