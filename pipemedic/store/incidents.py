from __future__ import annotations

import json
import os
import sqlite3
import time
from datetime import datetime, timezone
from typing import List, Optional

from pipemedic.errors import IncidentNotFound
from pipemedic.models import Incident


class IncidentStore:
    """
    SQLite persistence for incidents.

    The status axes and retry counter are real columns so that run/retry
    admission can be a single conditional UPDATE (atomic in SQLite). The rest
    of the record lives in a JSON payload column; the columns win on read.
    """

    def __init__(self, *, db_path: str) -> None:
        self.db_path = db_path
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.db_path, timeout=10.0)
        con.row_factory = sqlite3.Row
        return con

    def _init_db(self) -> None:
        with self._connect() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS incidents (
                    id TEXT PRIMARY KEY,
                    created_ts_unix REAL NOT NULL,
                    updated_ts_unix REAL NOT NULL,
                    status TEXT NOT NULL,
                    analysis_status TEXT NOT NULL,
                    patch_status TEXT NOT NULL,
                    mr_status TEXT NOT NULL,
                    category TEXT,
                    error_snippet TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    payload_json TEXT NOT NULL
                )
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_incidents_status ON incidents(status)")
            con.execute("CREATE INDEX IF NOT EXISTS idx_incidents_dedupe ON incidents(category, error_snippet)")
            con.commit()

    @staticmethod
    def _row_to_incident(row: sqlite3.Row) -> Incident:
        data = json.loads(row["payload_json"])
        data.update(
            status=row["status"],
            analysis_status=row["analysis_status"],
            patch_status=row["patch_status"],
            mr_status=row["mr_status"],
            retry_count=int(row["retry_count"]),
        )
        return Incident.model_validate(data)

    def create(self, incident: Incident) -> Incident:
        now = time.time()
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO incidents (
                    id, created_ts_unix, updated_ts_unix, status, analysis_status, patch_status,
                    mr_status, category, error_snippet, retry_count, payload_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    incident.id,
                    now,
                    now,
                    incident.status.value,
                    incident.analysis_status.value,
                    incident.patch_status.value,
                    incident.mr_status.value,
                    incident.category.value if incident.category else None,
                    incident.error_snippet,
                    incident.retry_count,
                    incident.model_dump_json(),
                ),
            )
            con.commit()
        return incident

    def get(self, incident_id: str) -> Optional[Incident]:
        with self._connect() as con:
            row = con.execute("SELECT * FROM incidents WHERE id = ?", (incident_id,)).fetchone()
        return self._row_to_incident(row) if row else None

    def require(self, incident_id: str) -> Incident:
        inc = self.get(incident_id)
        if inc is None:
            raise IncidentNotFound(incident_id)
        return inc

    def save(self, incident: Incident) -> Incident:
        incident.updated_at = datetime.now(timezone.utc)
        with self._connect() as con:
            cur = con.execute(
                """
                UPDATE incidents SET
                    updated_ts_unix = ?, status = ?, analysis_status = ?, patch_status = ?, mr_status = ?,
                    category = ?, error_snippet = ?, retry_count = ?, payload_json = ?
                WHERE id = ?
                """,
                (
                    time.time(),
                    incident.status.value,
                    incident.analysis_status.value,
                    incident.patch_status.value,
                    incident.mr_status.value,
                    incident.category.value if incident.category else None,
                    incident.error_snippet,
                    incident.retry_count,
                    incident.model_dump_json(),
                    incident.id,
                ),
            )
            con.commit()
            if cur.rowcount == 0:
                raise IncidentNotFound(incident.id)
        return incident

    def list(self, *, limit: int = 100) -> List[Incident]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT * FROM incidents ORDER BY created_ts_unix DESC LIMIT ?", (max(1, int(limit)),)
            ).fetchall()
        return [self._row_to_incident(r) for r in rows]

    def delete(self, incident_id: str) -> bool:
        with self._connect() as con:
            cur = con.execute("DELETE FROM incidents WHERE id = ?", (incident_id,))
            con.commit()
            return cur.rowcount > 0

    def find_open_duplicates(self, *, category: str | None, error_snippet: str, exclude_id: str) -> List[str]:
        if not category or not (error_snippet or "").strip():
            return []
        with self._connect() as con:
            rows = con.execute(
                "SELECT id FROM incidents WHERE status = 'open' AND category = ? AND error_snippet = ? AND id != ?",
                (category, error_snippet, exclude_id),
            ).fetchall()
        return [str(r["id"]) for r in rows]

    def try_begin_run(self, incident_id: str) -> bool:
        """
        Compare-and-set admission for an automation pass: succeeds only if no
        stage is currently running, and marks analysis as running in the same
        statement. Exactly one of two racing callers gets True.
        """
        with self._connect() as con:
            cur = con.execute(
                """
                UPDATE incidents SET analysis_status = 'running', patch_status = 'pending', updated_ts_unix = ?
                WHERE id = ? AND analysis_status != 'running' AND patch_status != 'running'
                """,
                (time.time(), incident_id),
            )
            con.commit()
            return cur.rowcount == 1

    def try_begin_retry(self, incident_id: str, *, ceiling: int) -> bool:
        """Atomically take one self-heal retry slot; False once retry_count has reached the ceiling."""
        with self._connect() as con:
            cur = con.execute(
                """
                UPDATE incidents SET retry_count = retry_count + 1, mr_status = 'fixing', updated_ts_unix = ?
                WHERE id = ? AND retry_count < ?
                """,
                (time.time(), incident_id, int(ceiling)),
            )
            con.commit()
            return cur.rowcount == 1
