"""SQLite audit log.

Records appended here share the `audit_records` table with the override
records SQLiteJobStorage writes inside its job transactions.
"""

import json
import logging
from typing import Any, List, Optional

from jobflow.commerce.audit import AuditRecord
from jobflow.storage.sqlite import SQLiteDatabase, write_audit_record

logger = logging.getLogger(__name__)


class SQLiteAuditLog(SQLiteDatabase):
    """AuditLog backed by SQLite."""

    def append(self, record: AuditRecord) -> None:
        with self._connect() as conn:
            write_audit_record(conn, record)
        logger.info(
            "AUDIT %s by %s on %s/%s: %s -> %s",
            record.action,
            record.actor_id,
            record.subject_type,
            record.subject_id,
            record.old_state,
            record.new_state,
        )

    def records(
        self,
        subject_id: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[AuditRecord]:
        query = "SELECT data FROM audit_records WHERE 1=1"
        params: List[Any] = []
        if subject_id is not None:
            query += " AND subject_id = ?"
            params.append(subject_id)
        if action is not None:
            query += " AND action = ?"
            params.append(action)
        query += " ORDER BY seq"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [AuditRecord.from_dict(json.loads(r["data"])) for r in rows]
