"""Synchronous peek into the test database, independent of the app's connection."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any


def read_subscribers(db_path: Path | str) -> list[dict[str, Any]]:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    try:
        rows = conn.execute("SELECT * FROM subscribers ORDER BY created_at").fetchall()
    finally:
        conn.close()

    out = []
    for row in rows:
        item = dict(row)
        for key in ("context", "verifier"):
            if item[key]:
                item[key] = json.loads(item[key])
        out.append(item)
    return out
