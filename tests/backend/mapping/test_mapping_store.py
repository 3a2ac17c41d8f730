"""Tests for the transactional mapping store."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Tuple

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from backend.app.errors import InvalidArgument, StoreUnavailable
from backend.app.mapping import (
    MappingRepository,
    MappingStore,
    ObjectRow,
    begin_write,
    create_mapping_engine,
    init_schema,
)

FROZEN = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


async def _setup_store(tmp_path: Path, **kwargs) -> Tuple[MappingStore, AsyncEngine]:
    engine = create_mapping_engine(f"sqlite+aiosqlite:///{tmp_path / 'mapping.db'}")
    await init_schema(engine)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    return MappingStore(session_factory, **kwargs), engine


def test_read_your_write(tmp_path) -> None:
    async def _run() -> None:
        store, engine = await _setup_store(tmp_path)
        written = await store.upsert_live(
            "photos", "2024/cat.png", "rcpt-1", "image/png", 3, '"abc"', {"owner": "ana"}
        )
        fetched = await store.get_live("photos", "2024/cat.png")
        assert fetched == written
        assert fetched is not None
        assert fetched.receipt_id == "rcpt-1"
        assert fetched.metadata == {"owner": "ana"}
        assert fetched.last_modified.tzinfo is not None
        assert await store.get_live("photos", "2024/dog.png") is None
        await engine.dispose()

    asyncio.run(_run())


def test_overwrite_replaces_receipt_and_advances_timestamp(tmp_path) -> None:
    async def _run() -> None:
        store, engine = await _setup_store(tmp_path, clock=lambda: FROZEN)
        first = await store.upsert_live("b", "k", "rcpt-1", "text/plain", 1, '"1"')
        second = await store.upsert_live("b", "k", "rcpt-2", "text/plain", 2, '"2"')
        assert second.receipt_id == "rcpt-2"
        assert second.last_modified > first.last_modified
        live = await store.get_live("b", "k")
        assert live is not None and live.receipt_id == "rcpt-2"

        async with async_sessionmaker(engine)() as session:
            rows = (
                await session.execute(select(ObjectRow).where(ObjectRow.key == "k").order_by(ObjectRow.id))
            ).scalars().all()
        assert [row.receipt_id for row in rows] == ["rcpt-1", "rcpt-2"]
        assert [row.deleted for row in rows] == [True, False]
        assert (await store.stats()).object_count == 1
        await engine.dispose()

    asyncio.run(_run())


def test_soft_delete_is_idempotent_and_key_can_be_rewritten(tmp_path) -> None:
    async def _run() -> None:
        store, engine = await _setup_store(tmp_path, clock=lambda: FROZEN)
        await store.upsert_live("b", "k", "rcpt-1", "text/plain", 1, '"1"')
        assert await store.soft_delete("b", "k") is True
        assert await store.get_live("b", "k") is None
        assert await store.soft_delete("b", "k") is False
        assert await store.soft_delete("b", "never-written") is False

        rewritten = await store.upsert_live("b", "k", "rcpt-2", "text/plain", 1, '"2"')
        assert rewritten.receipt_id == "rcpt-2"
        assert rewritten.last_modified > FROZEN
        await engine.dispose()

    asyncio.run(_run())


def test_concurrent_writers_leave_exactly_one_live_record(tmp_path) -> None:
    async def _run() -> None:
        store, engine = await _setup_store(tmp_path)
        receipts = [f"rcpt-{index}" for index in range(8)]
        results = await asyncio.gather(
            *(
                store.upsert_live("b", "shared", receipt, "text/plain", 1, '"x"')
                for receipt in receipts
            )
        )
        live = await store.get_live("b", "shared")
        assert live is not None
        assert live.receipt_id in receipts
        newest = max(results, key=lambda record: record.last_modified)
        assert live.receipt_id == newest.receipt_id
        assert len({record.last_modified for record in results}) == len(receipts)
        assert (await store.stats()).object_count == 1
        await engine.dispose()

    asyncio.run(_run())


def test_concurrent_writers_to_distinct_keys_all_commit(tmp_path) -> None:
    async def _run() -> None:
        store, engine = await _setup_store(tmp_path)
        await asyncio.gather(
            *(
                store.upsert_live("b", f"key-{index}", f"rcpt-{index}", "text/plain", 1, '"x"')
                for index in range(6)
            )
        )
        page = await store.list_page("b", limit=10)
        assert [record.key for record in page.records] == [f"key-{index}" for index in range(6)]
        assert page.has_more is False
        await engine.dispose()

    asyncio.run(_run())


def test_list_page_bounds_and_lookahead(tmp_path) -> None:
    async def _run() -> None:
        store, engine = await _setup_store(tmp_path)
        for index, key in enumerate(["a/1", "a/2", "a/3", "b/1", "a%x"]):
            await store.upsert_live("bk", key, f"rcpt-{index}", "text/plain", 1, '"x"')
        page = await store.list_page("bk", prefix="a/", limit=2)
        assert [record.key for record in page.records] == ["a/1", "a/2"]
        assert page.has_more is True
        page = await store.list_page("bk", prefix="a/", marker="a/2", limit=2)
        assert [record.key for record in page.records] == ["a/3"]
        assert page.has_more is False
        page = await store.list_page("bk", prefix="a%", limit=10)
        assert [record.key for record in page.records] == ["a%x"]
        page = await store.list_page("bk", prefix="A/", limit=10)
        assert page.records == ()
        empty = await store.list_page("bk", prefix="a/", limit=0)
        assert empty.records == () and empty.has_more is True
        with pytest.raises(ValueError):
            await store.list_page("bk", limit=-1)
        await engine.dispose()

    asyncio.run(_run())


def test_buckets_created_implicitly(tmp_path) -> None:
    async def _run() -> None:
        store, engine = await _setup_store(tmp_path)
        await store.upsert_live("zeta", "k", "rcpt-1", "text/plain", 1, '"x"')
        await store.upsert_live("alpha", "k", "rcpt-2", "text/plain", 1, '"x"')
        await store.upsert_live("alpha", "k2", "rcpt-3", "text/plain", 1, '"x"')
        buckets = await store.list_buckets()
        assert [bucket.name for bucket in buckets] == ["alpha", "zeta"]
        stats = await store.stats()
        assert stats.bucket_count == 2
        assert stats.object_count == 3
        await engine.dispose()

    asyncio.run(_run())


def test_store_failures_surface_as_store_unavailable(tmp_path) -> None:
    async def _run() -> None:
        engine = create_mapping_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        store = MappingStore(async_sessionmaker(engine, expire_on_commit=False))
        # Schema was never created, so every statement fails.
        with pytest.raises(StoreUnavailable):
            await store.get_live("b", "k")
        with pytest.raises(StoreUnavailable):
            await store.stats()
        with pytest.raises(StoreUnavailable):
            await store.upsert_live("b", "k", "rcpt", "text/plain", 1, '"x"')
        await engine.dispose()

    asyncio.run(_run())


def test_reads_proceed_while_a_write_transaction_is_open(tmp_path) -> None:
    async def _run() -> None:
        store, engine = await _setup_store(tmp_path)
        await store.upsert_live("b", "k", "rcpt-1", "text/plain", 1, '"x"')
        async with async_sessionmaker(engine, expire_on_commit=False)() as writer:
            await begin_write(writer)
            await MappingRepository(writer).ensure_bucket("other", FROZEN)
            live = await asyncio.wait_for(store.get_live("b", "k"), timeout=2)
            assert live is not None and live.receipt_id == "rcpt-1"
            page = await asyncio.wait_for(store.list_page("b", limit=10), timeout=2)
            assert [record.key for record in page.records] == ["k"]
            stats = await asyncio.wait_for(store.stats(), timeout=2)
            assert stats.bucket_count == 1
            await writer.rollback()
        await engine.dispose()

    asyncio.run(_run())


@pytest.mark.parametrize("key", ["", "a\x00b", "café/☃"])
def test_empty_and_binary_keys_round_trip(tmp_path, key) -> None:
    async def _run() -> None:
        store, engine = await _setup_store(tmp_path)
        await store.upsert_live("b", key, "rcpt-1", "text/plain", 0, '"x"')
        live = await store.get_live("b", key)
        assert live is not None and live.key == key
        page = await store.list_page("b", limit=10)
        assert [record.key for record in page.records] == [key]
        assert await store.soft_delete("b", key) is True
        assert await store.get_live("b", key) is None
        await engine.dispose()

    asyncio.run(_run())


def test_unencodable_key_is_rejected_without_store_error(tmp_path) -> None:
    async def _run() -> None:
        store, engine = await _setup_store(tmp_path)
        with pytest.raises(InvalidArgument):
            await store.upsert_live("b", "bad\udcff", "rcpt-1", "text/plain", 1, '"x"')
        with pytest.raises(InvalidArgument):
            await store.list_page("b", prefix="bad\udcff")
        assert await store.get_live("b", "bad\udcff") is None
        assert await store.soft_delete("b", "bad\udcff") is False
        assert (await store.stats()).object_count == 0
        await engine.dispose()

    asyncio.run(_run())
