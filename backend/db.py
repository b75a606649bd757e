from __future__ import annotations

import json
import os
import sqlite3
from contextlib import closing
from typing import Any, Dict, List, Optional

from models import Snapshot
from policy import summarize_snapshot

DB_PATH = os.environ.get("TRUSTWATCH_DB", "trustwatch.db")


def get_connection(path: Optional[str] = None):
    # check_same_thread=False allows the refresh thread to write snapshots
    return sqlite3.connect(path or DB_PATH, check_same_thread=False)


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS snapshots (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            at TEXT NOT NULL,
            findings_json TEXT NOT NULL,
            errors_json TEXT NOT NULL,
            summary_json TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_at ON snapshots (at)")
    conn.commit()


def init_db(path: Optional[str] = None) -> None:
    with closing(get_connection(path)) as conn:
        _ensure_schema(conn)


def save_snapshot(snapshot: Snapshot, path: Optional[str] = None) -> int:
    doc = snapshot.to_json_dict()
    summary = summarize_snapshot(snapshot)
    with closing(get_connection(path)) as conn:
        _ensure_schema(conn)
        cur = conn.execute(
            """
            INSERT INTO snapshots (at, findings_json, errors_json, summary_json)
            VALUES (?, ?, ?, ?)
            """,
            (
                doc["at"],
                json.dumps(doc["findings"]),
                json.dumps(doc.get("errors") or {}),
                json.dumps(summary),
            ),
        )
        conn.commit()
        return int(cur.lastrowid)


def _row_to_snapshot(row) -> Snapshot:
    _, at, findings_json, errors_json = row
    return Snapshot.from_json_dict(
        {
            "at": at,
            "findings": json.loads(findings_json or "[]"),
            "errors": json.loads(errors_json or "{}"),
        }
    )


def load_snapshot(snapshot_id: int, path: Optional[str] = None) -> Optional[Snapshot]:
    with closing(get_connection(path)) as conn:
        _ensure_schema(conn)
        row = conn.execute(
            "SELECT id, at, findings_json, errors_json FROM snapshots WHERE id = ?",
            (int(snapshot_id),),
        ).fetchone()
    if not row:
        return None
    return _row_to_snapshot(row)


def load_latest_snapshot(path: Optional[str] = None) -> Optional[Snapshot]:
    with closing(get_connection(path)) as conn:
        _ensure_schema(conn)
        row = conn.execute(
            "SELECT id, at, findings_json, errors_json FROM snapshots ORDER BY id DESC LIMIT 1"
        ).fetchone()
    if not row:
        return None
    return _row_to_snapshot(row)


def list_snapshots(limit: int = 20, path: Optional[str] = None) -> List[Dict[str, Any]]:
    with closing(get_connection(path)) as conn:
        _ensure_schema(conn)
        rows = conn.execute(
            "SELECT id, at, summary_json FROM snapshots ORDER BY id DESC LIMIT ?",
            (int(limit),),
        ).fetchall()

    out: List[Dict[str, Any]] = []
    for id_, at, summary_json in rows:
        try:
            summary = json.loads(summary_json or "{}")
        except ValueError:
            summary = {}
        out.append({"id": id_, "at": at, "summary": summary})
    return out
