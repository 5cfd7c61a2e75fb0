"""
SQLite subscriber store using aiosqlite.

One row per lowercased email, guarded by a unique index.  Writes go
through `transaction()`, which serializes units of work on the shared
connection and runs each inside BEGIN IMMEDIATE … COMMIT, so a
concurrent duplicate signup converges on the same row and never sees a
half-written one.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite

from app.config import DB_PATH, DB_TIMEOUT_MS
from app.errors import NotFoundError, TransientStoreError
from app.models import Subscriber, SubscriberStatus, VerifierResult

logger = logging.getLogger(__name__)

# ── Module-level connection ───────────────────────────────────────────────

_db: aiosqlite.Connection | None = None
_tx_lock: asyncio.Lock | None = None


async def init_db(path: str | None = None) -> None:
    """Open the database and create the schema if it doesn't exist."""
    global _db, _tx_lock
    db_path = Path(path or DB_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    # isolation_level=None: transactions are opened explicitly in transaction()
    _db = await aiosqlite.connect(
        str(db_path), timeout=DB_TIMEOUT_MS / 1000, isolation_level=None
    )
    _db.row_factory = aiosqlite.Row
    await _db.execute("PRAGMA journal_mode=WAL")
    await _db.execute(f"PRAGMA busy_timeout={int(DB_TIMEOUT_MS)}")
    await _db.executescript(_SCHEMA)
    await ensure_indexes()
    _tx_lock = asyncio.Lock()
    logger.info("Database initialized at %s", db_path)


async def close_db() -> None:
    """Close the database connection."""
    global _db, _tx_lock
    if _db is not None:
        await _db.close()
        _db = None
        _tx_lock = None
        logger.info("Database connection closed")


def get_db() -> aiosqlite.Connection:
    """Return the active database connection (must call init_db first)."""
    assert _db is not None, "Database not initialized, call init_db() first"
    return _db


async def ping() -> None:
    """Round-trip a trivial query; raises TransientStoreError when the store is unusable."""
    if _db is None:
        raise TransientStoreError()
    try:
        async with _db.execute("SELECT 1") as cur:
            await cur.fetchone()
    except (sqlite3.Error, ValueError) as exc:
        raise TransientStoreError() from exc


# ── Schema ────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS subscribers (
    email       TEXT NOT NULL,
    status      TEXT NOT NULL,
    profile     TEXT,
    source      TEXT,
    utm         TEXT,
    context     TEXT,           -- JSON {client, server}
    verifier    TEXT,           -- JSON, last verification result
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
"""


async def ensure_indexes() -> None:
    """Create the unique email index. Idempotent, safe to call at any time."""
    db = get_db()
    await db.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_subscribers_email ON subscribers(email)"
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_subscribers_status ON subscribers(status)"
    )


# ── Transactions ──────────────────────────────────────────────────────────


async def _rollback(db: aiosqlite.Connection) -> None:
    try:
        await db.execute("ROLLBACK")
    except sqlite3.Error:
        logger.exception("Rollback failed")


@asynccontextmanager
async def transaction() -> AsyncIterator[aiosqlite.Connection]:
    """
    Run a unit of work atomically.

    Commits on success, rolls back on any exception.  Database errors are
    re-raised as TransientStoreError; everything else propagates as is.
    """
    db = get_db()
    assert _tx_lock is not None
    async with _tx_lock:
        try:
            await db.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            logger.exception("Could not open transaction")
            raise TransientStoreError() from exc

        try:
            yield db
        except sqlite3.Error as exc:
            await _rollback(db)
            logger.exception("Transaction failed, rolled back")
            raise TransientStoreError() from exc
        except BaseException:
            await _rollback(db)
            raise

        try:
            await db.execute("COMMIT")
        except sqlite3.Error as exc:
            await _rollback(db)
            logger.exception("Commit failed, rolled back")
            raise TransientStoreError() from exc


# ── Helpers ───────────────────────────────────────────────────────────────


class UpsertOutcome(str, Enum):
    CREATED = "created"
    ALREADY_EXISTED = "already_existed"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _json_or_none(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, separators=(",", ":"))


def _row_to_subscriber(row: aiosqlite.Row) -> Subscriber:
    verifier = row["verifier"]
    return Subscriber(
        email=row["email"],
        status=row["status"],
        profile=row["profile"],
        source=row["source"],
        utm=row["utm"],
        context=json.loads(row["context"]) if row["context"] else None,
        verifier=VerifierResult.model_validate_json(verifier) if verifier else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# ══════════════════════════════════════════════════════════════════════════
#                    SUBSCRIBER REPOSITORY
# ══════════════════════════════════════════════════════════════════════════


async def upsert_pending(
    email: str,
    *,
    profile: str | None = None,
    utm: str | None = None,
    source: str | None = None,
    context: dict[str, Any] | None = None,
) -> UpsertOutcome:
    """
    Insert the subscriber, or reset an existing one to pending.

    `created_at` is only ever written by the insert, so the first writer's
    timestamp survives any number of later signups for the same address.
    """
    email = email.strip().lower()
    now = _now_iso()
    pending = SubscriberStatus.PENDING_VERIFICATION.value
    context_json = _json_or_none(context)

    async with transaction() as db:
        cur = await db.execute(
            """
            INSERT INTO subscribers
                (email, status, profile, source, utm, context, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(email) DO NOTHING
            """,
            (email, pending, profile, source, utm, context_json, now, now),
        )
        if cur.rowcount == 1:
            return UpsertOutcome.CREATED

        await db.execute(
            """
            UPDATE subscribers SET
                status = ?, profile = ?, source = ?, utm = ?, context = ?,
                updated_at = ?
            WHERE email = ?
            """,
            (pending, profile, source, utm, context_json, now, email),
        )
        return UpsertOutcome.ALREADY_EXISTED


async def get_subscriber(email: str) -> Subscriber | None:
    """Fetch a subscriber by (case-insensitive) email."""
    db = get_db()
    try:
        async with db.execute(
            "SELECT * FROM subscribers WHERE email = ?", (email.strip().lower(),)
        ) as cur:
            row = await cur.fetchone()
    except sqlite3.Error as exc:
        logger.exception("Subscriber lookup failed")
        raise TransientStoreError() from exc
    return _row_to_subscriber(row) if row else None


async def apply_verification(email: str, result: VerifierResult) -> SubscriberStatus:
    """
    Record a verification result and derive the new status.

    Re-running verification overwrites the previous result, so a subscriber
    can move between active and invalid.
    """
    email = email.strip().lower()
    status = SubscriberStatus.ACTIVE if result.deliverable else SubscriberStatus.INVALID

    async with transaction() as db:
        async with db.execute("SELECT 1 FROM subscribers WHERE email = ?", (email,)) as cur:
            exists = await cur.fetchone()
        if not exists:
            raise NotFoundError()

        await db.execute(
            "UPDATE subscribers SET status = ?, verifier = ?, updated_at = ? WHERE email = ?",
            (status.value, result.model_dump_json(), _now_iso(), email),
        )
    return status
