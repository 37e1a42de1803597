"""
Audit Spine Manager

Append-only record of everything the agent decided and did: gate
evaluations, tool evidence, proposal submissions and reconciliation outcomes.
Every write returns the event_id so callers can reference it downstream.
"""

from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Optional

import psycopg2
import psycopg2.errors

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS agent_events (
    id           UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    actor_id     TEXT NOT NULL,
    event_type   TEXT NOT NULL,
    payload      JSONB NOT NULL,
    payload_hash TEXT NOT NULL
)
"""

_EVENT_COLUMNS = "id, created_at, actor_id, event_type, payload, payload_hash"


def _row_to_event(row) -> dict[str, Any]:
    return {
        "id": str(row[0]),
        "created_at": row[1],
        "actor_id": row[2],
        "event_type": row[3],
        "payload": row[4],
        "payload_hash": row[5],
    }


class AuditSpineManager:
    """
    Append-only writer for the agent_events table.

    All inserts go through this class so the gate, the engine and the
    service surface share one interface.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn

    def _connect(self):
        return psycopg2.connect(self._dsn)

    def ensure_schema(self) -> None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(SCHEMA_SQL)
            conn.commit()
            cur.close()
        finally:
            conn.close()

    def get_event(self, event_id: str) -> Optional[dict[str, Any]]:
        """
        Fetch a single event by ID. SELECT-only.
        Returns None if the event does not exist.
        """
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {_EVENT_COLUMNS} FROM agent_events WHERE id = %s",
                (event_id,),
            )
            row = cur.fetchone()
            cur.close()
            return _row_to_event(row) if row else None
        finally:
            conn.close()

    def recent_events(self, limit: int = 50, event_type: str | None = None) -> list[dict[str, Any]]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            if event_type:
                cur.execute(
                    f"SELECT {_EVENT_COLUMNS} FROM agent_events "
                    "WHERE event_type = %s ORDER BY created_at DESC LIMIT %s",
                    (event_type, limit),
                )
            else:
                cur.execute(
                    f"SELECT {_EVENT_COLUMNS} FROM agent_events "
                    "ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                )
            rows = cur.fetchall()
            cur.close()
            return [_row_to_event(row) for row in rows]
        finally:
            conn.close()

    def log_event(
        self,
        actor_id: str,
        event_type: str,
        payload: dict[str, Any],
        _max_retries: int = 3,
    ) -> str:
        """
        Write an event and return its UUID.

        Retries on transient connection failures and deadlocks.
        """
        body = json.dumps(payload, sort_keys=True, default=str)
        payload_hash = hashlib.sha256(body.encode()).hexdigest()

        for attempt in range(_max_retries):
            try:
                conn = self._connect()
            except psycopg2.OperationalError:
                if attempt < _max_retries - 1:
                    time.sleep(0.05 * (attempt + 1))
                    continue
                raise
            try:
                cur = conn.cursor()
                cur.execute(
                    "INSERT INTO agent_events "
                    "(actor_id, event_type, payload, payload_hash) "
                    "VALUES (%s, %s, %s, %s) "
                    "RETURNING id",
                    (actor_id, event_type, body, payload_hash),
                )
                event_id = str(cur.fetchone()[0])
                conn.commit()
                cur.close()
                return event_id
            except psycopg2.errors.DeadlockDetected:
                conn.rollback()
                if attempt < _max_retries - 1:
                    time.sleep(0.05 * (attempt + 1))
                    continue
                raise
            finally:
                conn.close()
        raise RuntimeError("log_event: exhausted retries")
