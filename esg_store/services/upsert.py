"""
Concurrency-aware upsert orchestrator.

Runs the read-modify-write cycle for one aggregate:

    load -> (create | diff-apply) -> commit
      ^                                |
      +---- reload on write conflict --+

Each attempt uses a fresh session and a single transaction, so a conflict
discards every piece of tracked state. Callers never see a raw concurrency
exception: when retries run out they get the latest committed state instead.
"""
import logging
import threading
import uuid
from typing import Any, Optional

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from esg_store.config import get_settings
from esg_store.services.aggregates import AggregateMapper
from esg_store.services.revision_engine import RevisionEngine, WriteConflictError, is_write_conflict

logger = logging.getLogger(__name__)


class UpsertCancelledError(Exception):
    """Raised when the caller cancels an upsert; nothing from the open attempt is committed."""
    def __init__(self, aggregate: str, aggregate_id: Any):
        self.aggregate = aggregate
        self.aggregate_id = aggregate_id
        super().__init__(f"Upsert of {aggregate} {aggregate_id} was cancelled")


class AggregateDeactivatedError(Exception):
    """
    Raised when an upsert names an aggregate whose revisions were all deactivated.

    Deactivation is final for this layer, so the upsert is refused rather than retried.
    """
    def __init__(self, aggregate: str, aggregate_id: Any):
        self.aggregate = aggregate
        self.aggregate_id = aggregate_id
        super().__init__(f"{aggregate} {aggregate_id} has been deactivated")


class UpsertFailedError(Exception):
    """Raised when the store rejects an upsert for a reason other than a write conflict."""
    def __init__(self, aggregate: str, aggregate_id: Any, message: str):
        self.aggregate = aggregate
        self.aggregate_id = aggregate_id
        self.message = message
        super().__init__(f"Upsert of {aggregate} {aggregate_id} failed: {message}")


class UpsertOrchestrator:
    """Upserts and reads one aggregate type with bounded retry on write conflicts."""

    def __init__(
        self,
        session_factory: sessionmaker,
        mapper: AggregateMapper,
        max_attempts: Optional[int] = None,
        engine: Optional[RevisionEngine] = None,
    ):
        if max_attempts is None:
            max_attempts = get_settings().upsert_max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.session_factory = session_factory
        self.mapper = mapper
        self.max_attempts = max_attempts
        self.engine = engine or RevisionEngine()

    def get(self, aggregate_id: uuid.UUID):
        """Active revision of an aggregate, or None."""
        with self.session_factory() as session:
            return self.mapper.load(session, aggregate_id)

    def upsert(
        self,
        incoming: Any,
        user_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Create or update an aggregate from ``incoming``.

        Returns the committed aggregate. On a write conflict the aggregate is
        reloaded and the diff re-applied, up to ``max_attempts`` times; after
        that the latest committed state is returned.

        Known trade-off: if the aggregate vanishes between attempts this
        returns the latest available state (None) rather than raising.

        Raises:
            InvalidAggregateError: malformed input, before any I/O
            AggregateDeactivatedError: the aggregate exists only as deactivated revisions
            UpsertFailedError: the store rejected the write for a non-conflict reason
            UpsertCancelledError: ``cancel_event`` was set
            AuditSerializationError: a write could not be audited
        """
        incoming = self.mapper.validate(incoming)
        aggregate_id = incoming.id
        name = self.mapper.name

        seen_existing = False
        force_replace = False
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.session_factory() as session:
                    with session.begin():
                        self._check_cancelled(cancel_event, name, aggregate_id)
                        existing = self.mapper.load(session, aggregate_id)

                        if existing is None and seen_existing:
                            logger.warning(
                                "%s %s disappeared during upsert retry; returning latest state",
                                name, aggregate_id,
                            )
                            return None

                        if existing is None:
                            if self.engine.history(session, self.mapper.root_model, aggregate_id):
                                raise AggregateDeactivatedError(name, aggregate_id)
                            result = self.mapper.create(session, self.engine, incoming, user_id)
                        else:
                            seen_existing = True
                            # Stale children on a reload are rewritten, not merged
                            result = self.mapper.apply(
                                session, self.engine, existing, incoming, user_id, force_replace
                            )

                        self._check_cancelled(cancel_event, name, aggregate_id)
            except (WriteConflictError, StaleDataError, DBAPIError) as exc:
                if not is_write_conflict(exc):
                    logger.error("Storage error upserting %s %s: %s", name, aggregate_id, exc)
                    raise UpsertFailedError(name, aggregate_id, str(exc)) from exc
                logger.info(
                    "Write conflict upserting %s %s (attempt %d/%d): %s",
                    name, aggregate_id, attempt, self.max_attempts, exc,
                )
                force_replace = True
                continue

            logger.info("Upserted %s %s on attempt %d", name, aggregate_id, attempt)
            return result

        logger.warning(
            "Giving up on %s %s after %d conflicting attempts; returning latest committed state",
            name, aggregate_id, self.max_attempts,
        )
        self._check_cancelled(cancel_event, name, aggregate_id)
        return self.get(aggregate_id)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event], name: str, aggregate_id) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise UpsertCancelledError(name, aggregate_id)
