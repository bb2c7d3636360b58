"""
Revision engine - copy-on-write persistence for revisioned records.

All writes to versioned tables MUST go through here. An update never touches
the business fields of a stored row: the current row is flipped inactive
and a new row carrying the changed values is appended to the same revision
group, inside the caller's transaction.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import inspect, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.orm.exc import StaleDataError

from esg_store.models.revisioned import INCLUDE_HISTORY, REVISION_FIELDS, RevisionedRecord, utcnow
from esg_store.services.audit_recorder import AuditRecorder

logger = logging.getLogger(__name__)

# PostgreSQL: unique_violation, serialization_failure, deadlock_detected
_CONFLICT_SQLSTATES = {"23505", "40001", "40P01"}


class WriteConflictError(Exception):
    """
    Raised when a write is based on a revision another writer already superseded.

    Recoverable: the upsert orchestrator reloads and retries.
    """
    def __init__(self, entity_name: str, record_id: Any, message: Optional[str] = None):
        self.entity_name = entity_name
        self.record_id = record_id
        self.message = message or f"{entity_name} {record_id} was modified by another writer"
        super().__init__(self.message)


def is_write_conflict(exc: BaseException) -> bool:
    """True if exc means another writer committed first."""
    if isinstance(exc, (WriteConflictError, StaleDataError)):
        return True
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if code in _CONFLICT_SQLSTATES:
            return True
        message = str(orig).lower()
        if isinstance(exc, IntegrityError) and "unique" in message:
            return True
        if isinstance(exc, OperationalError) and "database is locked" in message:
            return True
    return False


class RevisionEngine:
    """Stages inserts, revisions and deactivations together with their audit entries."""

    def __init__(self, recorder: Optional[AuditRecorder] = None):
        self.recorder = recorder or AuditRecorder()

    def add(self, session: Session, record, user_id: Optional[str] = None):
        """
        Stage a brand new record as version 1 of a new (or given) revision group.

        Non-revisioned models are staged unchanged.
        """
        if not isinstance(record, RevisionedRecord):
            session.add(record)
            return record

        state = inspect(record)
        if state.persistent or state.detached:
            raise ValueError(
                f"{type(record).__name__} {record.id} is already stored; use revise()"
            )

        if record.id is None:
            record.id = uuid.uuid4()
        if record.revision_group_id is None:
            record.revision_group_id = uuid.uuid4()
        record.version = 1
        record.is_active = True
        record.created_at = utcnow()
        record.created_by = user_id

        session.add(record)
        self.recorder.record_insert(session, record, user_id)
        logger.debug(
            "Staged %s %s v1 (group %s)",
            type(record).__name__, record.id, record.revision_group_id,
        )
        return record

    def revise(
        self,
        session: Session,
        record,
        user_id: Optional[str] = None,
        force: bool = False,
        **changes: Any,
    ):
        """
        Stage the next revision of a stored record.

        The change set is every attribute the caller already set on the
        tracked row plus the keyword ``changes``. Returns the new active row,
        or ``record`` itself when nothing changed and ``force`` is False.

        Raises WriteConflictError if ``record`` is no longer the active revision.
        """
        if not isinstance(record, RevisionedRecord):
            raise TypeError(f"{type(record).__name__} is not a revisioned record")

        state = inspect(record)
        # A record that was never stored is new, even if it looks like a modification
        if state.transient or (state.pending and record.revision_group_id is None):
            for name, value in changes.items():
                setattr(record, name, value)
            return self.add(session, record, user_id)
        if not state.persistent:
            raise ValueError(
                f"{type(record).__name__} {record.id} must be loaded in this session to be revised"
            )

        requested = self._take_pending_changes(session, record)
        requested.update(changes)
        invalid = set(requested) - set(record.business_fields)
        if invalid:
            raise ValueError(
                f"Cannot change {', '.join(sorted(invalid))} on {type(record).__name__}"
            )

        diff: Dict[str, Dict[str, Any]] = {}
        for name, new in requested.items():
            original = getattr(record, name)
            if original != new:
                diff[name] = {"original": original, "new": new}

        if not diff and not force:
            return record

        self._flip_inactive(session, record)

        values = record.business_values()
        values.update({name: change["new"] for name, change in diff.items()})
        successor = type(record)(
            id=uuid.uuid4(),
            revision_group_id=record.revision_group_id,
            version=record.version + 1,
            is_active=True,
            created_at=utcnow(),
            created_by=user_id,
            **values,
        )
        session.add(successor)
        self.recorder.record_update(session, successor, diff, user_id, entity_id=record.identity())
        logger.info(
            "Revised %s group %s: v%d -> v%d (%s)",
            type(record).__name__,
            record.revision_group_id,
            record.version,
            successor.version,
            ", ".join(sorted(diff)) or "full rewrite",
        )
        return successor

    def deactivate(self, session: Session, record, user_id: Optional[str] = None) -> None:
        """Retire the active revision of a record. The only removal this layer offers."""
        if not isinstance(record, RevisionedRecord):
            raise TypeError(f"{type(record).__name__} is not a revisioned record")
        self._flip_inactive(session, record)
        self.recorder.record_update(
            session, record, {"is_active": {"original": True, "new": False}}, user_id
        )
        logger.info("Deactivated %s %s v%d", type(record).__name__, record.id, record.version)

    def history(self, session: Session, model: Type, revision_group_id: uuid.UUID) -> List:
        """Every revision of one logical record, oldest first."""
        query = (
            select(model)
            .where(model.revision_group_id == revision_group_id)
            .order_by(model.version)
            .execution_options(**{INCLUDE_HISTORY: True})
        )
        return list(session.scalars(query).all())

    def _take_pending_changes(self, session: Session, record) -> Dict[str, Any]:
        """Collect attributes the caller set on the tracked row and revert them."""
        state = inspect(record)
        pending = {}
        unknown_originals = []
        for attr in state.mapper.column_attrs:
            history = state.attrs[attr.key].history
            if not history.added:
                continue
            if attr.key in REVISION_FIELDS:
                raise ValueError(f"{attr.key} is managed by the revision engine")
            pending[attr.key] = history.added[0]
            if history.deleted:
                set_committed_value(record, attr.key, history.deleted[0])
            else:
                # Set without its stored value loaded (or stored as NULL)
                unknown_originals.append(attr.key)
        if unknown_originals:
            session.refresh(record, attribute_names=unknown_originals)
        return pending

    def _flip_inactive(self, session: Session, record) -> None:
        model = type(record)
        # Row token check: the row must still be the active revision we loaded
        result = session.execute(
            update(model)
            .where(
                model.id == record.id,
                model.version == record.version,
                model.is_active == True,  # noqa: E712
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                "Write conflict on %s %s v%d", model.__name__, record.id, record.version
            )
            raise WriteConflictError(model.__name__, record.id)
        set_committed_value(record, "is_active", False)
