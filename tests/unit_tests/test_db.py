"""Tests for the subscriber store."""

import asyncio

import pytest

from app.db import UpsertOutcome
from app.errors import NotFoundError, TransientStoreError
from app.models import SubscriberStatus, VerificationOutcome, VerifierResult
from tests.mocks.store import read_subscribers

_DELIVERABLE = VerifierResult(deliverable=True, result=VerificationOutcome.MX_OK, mx=True)
_NO_MX = VerifierResult(deliverable=False, result=VerificationOutcome.NO_MX)


class TestUpsertPending:
    async def test_first_write_creates(self, store, db_path):
        outcome = await store.upsert_pending(
            "user@example.com", profile="reader", utm="utm_source=x", source="landing",
            context={"client": {"browser": "Firefox"}},
        )

        assert outcome is UpsertOutcome.CREATED
        rows = read_subscribers(db_path)
        assert len(rows) == 1
        row = rows[0]
        assert row["email"] == "user@example.com"
        assert row["status"] == "pending-verification"
        assert row["profile"] == "reader"
        assert row["utm"] == "utm_source=x"
        assert row["context"] == {"client": {"browser": "Firefox"}}
        assert row["verifier"] is None
        assert row["created_at"] == row["updated_at"]

    async def test_second_write_updates_and_keeps_created_at(self, store, db_path):
        await store.upsert_pending("user@example.com", source="landing")
        created_at = read_subscribers(db_path)[0]["created_at"]

        await asyncio.sleep(0.01)
        outcome = await store.upsert_pending("user@example.com", source="footer", profile="p")

        assert outcome is UpsertOutcome.ALREADY_EXISTED
        rows = read_subscribers(db_path)
        assert len(rows) == 1
        assert rows[0]["created_at"] == created_at
        assert rows[0]["updated_at"] > created_at
        assert rows[0]["source"] == "footer"
        assert rows[0]["profile"] == "p"

    async def test_resubscribe_resets_status_to_pending(self, store):
        await store.upsert_pending("user@example.com")
        await store.apply_verification("user@example.com", _DELIVERABLE)

        await store.upsert_pending("user@example.com")

        subscriber = await store.get_subscriber("user@example.com")
        assert subscriber.status == SubscriberStatus.PENDING_VERIFICATION

    async def test_email_identity_is_case_insensitive(self, store, db_path):
        await store.upsert_pending("User@Example.com")
        outcome = await store.upsert_pending("user@example.COM")

        assert outcome is UpsertOutcome.ALREADY_EXISTED
        assert [r["email"] for r in read_subscribers(db_path)] == ["user@example.com"]

    async def test_concurrent_first_writes_converge(self, store, db_path):
        outcomes = await asyncio.gather(
            *(store.upsert_pending("race@example.com", source=f"s{i}") for i in range(10))
        )

        assert outcomes.count(UpsertOutcome.CREATED) == 1
        assert outcomes.count(UpsertOutcome.ALREADY_EXISTED) == 9
        rows = read_subscribers(db_path)
        assert len(rows) == 1
        assert rows[0]["status"] == "pending-verification"

    async def test_concurrent_pair_keeps_single_created_at(self, store, db_path):
        await asyncio.gather(
            store.upsert_pending("pair@example.com"),
            store.upsert_pending("pair@example.com"),
        )
        rows = read_subscribers(db_path)
        assert len(rows) == 1
        assert rows[0]["created_at"] <= rows[0]["updated_at"]


class TestGetSubscriber:
    async def test_missing(self, store):
        assert await store.get_subscriber("ghost@example.com") is None

    async def test_round_trip(self, store):
        await store.upsert_pending("user@example.com", source="landing", context={"server": {"ip": "1.2.3.4"}})
        subscriber = await store.get_subscriber("USER@example.com")

        assert subscriber.email == "user@example.com"
        assert subscriber.source == "landing"
        assert subscriber.context == {"server": {"ip": "1.2.3.4"}}
        assert subscriber.created_at.tzinfo is not None


class TestApplyVerification:
    async def test_deliverable_becomes_active(self, store, db_path):
        await store.upsert_pending("user@example.com")
        status = await store.apply_verification("user@example.com", _DELIVERABLE)

        assert status is SubscriberStatus.ACTIVE
        row = read_subscribers(db_path)[0]
        assert row["status"] == "active"
        assert row["verifier"] == {"deliverable": True, "result": "mx_ok", "mx": True, "disposable": False}

    async def test_undeliverable_becomes_invalid(self, store):
        await store.upsert_pending("user@example.com")
        assert await store.apply_verification("user@example.com", _NO_MX) is SubscriberStatus.INVALID

    async def test_reverification_overwrites(self, store):
        await store.upsert_pending("user@example.com")
        await store.apply_verification("user@example.com", _DELIVERABLE)
        status = await store.apply_verification("user@example.com", _NO_MX)

        assert status is SubscriberStatus.INVALID
        subscriber = await store.get_subscriber("user@example.com")
        assert subscriber.verifier == _NO_MX

    async def test_not_found(self, store, db_path):
        with pytest.raises(NotFoundError):
            await store.apply_verification("ghost@example.com", _DELIVERABLE)
        assert read_subscribers(db_path) == []


class TestTransactions:
    async def test_ensure_indexes_is_idempotent(self, store):
        await store.ensure_indexes()
        await store.ensure_indexes()

    async def test_unique_index_rejects_raw_duplicates(self, store):
        with pytest.raises(TransientStoreError):
            async with store.transaction() as conn:
                for _ in range(2):
                    await conn.execute(
                        "INSERT INTO subscribers (email, status, created_at, updated_at) "
                        "VALUES ('dup@example.com', 'pending-verification', 'x', 'x')"
                    )

    async def test_rollback_on_error(self, store, db_path):
        with pytest.raises(RuntimeError):
            async with store.transaction() as conn:
                await conn.execute(
                    "INSERT INTO subscribers (email, status, created_at, updated_at) "
                    "VALUES ('gone@example.com', 'pending-verification', 'x', 'x')"
                )
                raise RuntimeError("boom")

        assert read_subscribers(db_path) == []

    async def test_store_usable_after_failed_transaction(self, store):
        with pytest.raises(RuntimeError):
            async with store.transaction():
                raise RuntimeError("boom")

        assert await store.upsert_pending("after@example.com") is UpsertOutcome.CREATED
