"""
Revisioned record shape and the active-revision view.

Every mutable business entity mixes in ``RevisionedRecord``. Rows are never
overwritten: each accepted write appends a new row to the record's revision
group and flips ``is_active`` off on the row it supersedes.

Invariants:
- ``revision_group_id`` never changes across a logical record's lifetime
- versions within a group run 1, 2, 3, ... with no gaps or repeats
- after commit exactly one row per group has ``is_active = True``
- a superseded row only ever changes ``is_active``
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String, UniqueConstraint, Uuid, event
from sqlalchemy.orm import Session, declared_attr, with_loader_criteria

# Execution option that lets a statement see superseded revisions
INCLUDE_HISTORY = "include_history"

# Columns owned by the revision machinery; callers never change these directly
REVISION_FIELDS = frozenset(
    {"id", "revision_group_id", "version", "is_active", "created_at", "created_by"}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RevisionedRecord:
    """Mixin for every versioned table."""

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    revision_group_id = Column(Uuid, nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_by = Column(String(256), nullable=True)

    @declared_attr
    def __table_args__(cls):
        # A concurrent writer appending the same next version is rejected by the store
        return (
            UniqueConstraint(
                "revision_group_id", "version", name=f"uq_{cls.__tablename__}_revision"
            ),
        )

    # Fields a caller may change; everything except the revision columns
    business_fields: tuple = ()

    def identity(self) -> uuid.UUID:
        """Identifier of this revision row."""
        return self.id

    def revision_payload(self) -> dict:
        return {
            "id": self.id,
            "revision_group_id": self.revision_group_id,
            "version": self.version,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "created_by": self.created_by,
        }

    def audit_payload(self) -> dict:
        """Tree-shaped snapshot of this row for the audit ledger."""
        raise NotImplementedError

    def business_values(self) -> dict:
        return {name: getattr(self, name) for name in self.business_fields}


class RevisionAwareSession(Session):
    """Session whose ORM SELECTs only see active revisions unless told otherwise."""


@event.listens_for(RevisionAwareSession, "do_orm_execute")
def _only_active_revisions(execute_state):
    # Attribute refreshes must still reach rows that were superseded in this session
    if (
        execute_state.is_select
        and not execute_state.is_column_load
        and not execute_state.is_relationship_load
        and not execute_state.execution_options.get(INCLUDE_HISTORY, False)
    ):
        execute_state.statement = execute_state.statement.options(
            with_loader_criteria(
                RevisionedRecord,
                lambda cls: cls.is_active == True,  # noqa: E712
                include_aliases=True,
            )
        )
