"""
Audit ledger model - NOT a versioned domain object.

Every accepted Insert or Update of a revisioned record writes exactly one
entry here, in the same transaction as the write itself.
"""
import uuid

from sqlalchemy import Column, DateTime, String, Text, Uuid

from esg_store.database import Base
from esg_store.models.revisioned import utcnow


class AuditEntry(Base):
    """
    Immutable audit entry with a tamper-evident payload hash.

    Invariants:
    - Once written, never edited or deleted
    - Append-only
    - payload_hash is the SHA-256 hex digest of payload_json exactly as stored
    """
    __tablename__ = "audit_entries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    user_id = Column(String(256), nullable=True)  # Nullable for system writes
    entity_name = Column(String(200), nullable=False, index=True)  # e.g. "Organisation"
    entity_id = Column(Uuid, nullable=False, index=True)  # Row id the write refers to
    action = Column(String(50), nullable=False)  # AuditAction value
    payload_hash = Column(String(128), nullable=False)
    payload_json = Column(Text, nullable=True)
