"""
Audit recorder - writes the tamper-evident ledger of every accepted write.

Entries are staged on the caller's session, so they commit (or roll back)
together with the write they describe.
"""
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from esg_store.config import get_settings
from esg_store.models.audit import AuditEntry
from esg_store.models.enums import AuditAction
from esg_store.models.revisioned import utcnow

logger = logging.getLogger(__name__)


class AuditSerializationError(Exception):
    """
    Raised when a payload cannot be serialized for the ledger.

    Fatal for the enclosing commit: a write without its audit entry must not land.
    """
    def __init__(self, entity_name: str, message: str):
        self.entity_name = entity_name
        self.message = message
        super().__init__(f"Cannot audit {entity_name}: {message}")


@dataclass
class AuditPage:
    """One page of the audit ledger, newest first."""
    total: int
    page: int
    page_size: int
    items: List[AuditEntry] = field(default_factory=list)


def _encode(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not audit-serializable")


def canonical_json(payload: Dict[str, Any]) -> str:
    """Serialize a payload to the exact text that gets hashed and stored."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=_encode)


def payload_hash(payload_json: str) -> str:
    """SHA-256 hex digest of a serialized payload."""
    return hashlib.sha256(payload_json.encode("utf-8")).hexdigest()


class AuditRecorder:
    """Stages audit entries next to revision writes and reads the ledger back."""

    def __init__(self, max_page_size: Optional[int] = None):
        self.max_page_size = max_page_size or get_settings().audit_max_page_size

    def record_insert(self, session: Session, record, user_id: Optional[str] = None) -> AuditEntry:
        """Audit a newly inserted record with its full payload."""
        return self._stage(
            session,
            entity_name=type(record).__name__,
            entity_id=record.identity(),
            action=AuditAction.INSERT,
            payload=record.audit_payload(),
            user_id=user_id,
        )

    def record_update(
        self,
        session: Session,
        record,
        changes: Dict[str, Dict[str, Any]],
        user_id: Optional[str] = None,
        entity_id: Optional[uuid.UUID] = None,
    ) -> AuditEntry:
        """
        Audit an update.

        Payload is ``{"entity": ..., "changes": {field: {"original", "new"}}}``
        holding only the fields the caller changed. ``entity_id`` defaults to
        the record's own identity; revisions pass the superseded row id.
        """
        return self._stage(
            session,
            entity_name=type(record).__name__,
            entity_id=entity_id or record.identity(),
            action=AuditAction.UPDATE,
            payload={"entity": record.audit_payload(), "changes": changes},
            user_id=user_id,
        )

    def _stage(
        self,
        session: Session,
        entity_name: str,
        entity_id: uuid.UUID,
        action: AuditAction,
        payload: Dict[str, Any],
        user_id: Optional[str],
    ) -> AuditEntry:
        try:
            payload_json = canonical_json(payload)
        except (TypeError, ValueError) as exc:
            logger.error("Audit serialization failed for %s %s: %s", entity_name, entity_id, exc)
            raise AuditSerializationError(entity_name, str(exc)) from exc

        entry = AuditEntry(
            id=uuid.uuid4(),
            timestamp=utcnow(),
            user_id=user_id,
            entity_name=entity_name,
            entity_id=entity_id,
            action=action.value,
            payload_json=payload_json,
            payload_hash=payload_hash(payload_json),
        )
        session.add(entry)
        logger.debug("Audit %s staged for %s %s", action.value, entity_name, entity_id)
        return entry

    @staticmethod
    def verify(entry: AuditEntry) -> bool:
        """True if the stored JSON still matches its hash."""
        return payload_hash(entry.payload_json or "") == entry.payload_hash

    def list_entries(
        self,
        session: Session,
        entity_name: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> AuditPage:
        """
        Read one page of the ledger, ordered by timestamp descending.

        page_size is clamped to [1, max_page_size]; page is at least 1.
        """
        if page_size is None:
            page_size = get_settings().audit_default_page_size
        page_size = max(1, min(page_size, self.max_page_size))
        page = max(1, page)

        query = select(AuditEntry)
        if entity_name and entity_name.strip():
            query = query.where(AuditEntry.entity_name == entity_name)

        total = session.scalar(select(func.count()).select_from(query.subquery()))
        items = session.scalars(
            query.order_by(AuditEntry.timestamp.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return AuditPage(total=total or 0, page=page, page_size=page_size, items=list(items))
