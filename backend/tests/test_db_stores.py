"""Tests for the SQLAlchemy backends against a temporary SQLite database."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select

from db.database import create_session_factory, get_session_factory, init_db
from db.models import KeyRecord, TokenMappingRecord
from db.stores import SqlAuditStore, SqlKeyProvider, SqlTokenMappingStore
from veil.engine import PrivacyEngine
from veil.errors import (
    DecryptionFailedError,
    InvalidParameterError,
    KeyNotFoundError,
    KeyRotationFailedError,
    NoActiveKeyError,
)
from veil.models import AuditEntry, AuditOperation, TokenMapping, utcnow

MASTER_KEY = "test_key_for_development_only_32chars00"
ITERATIONS = 1_000


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine, factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'veil.db'}")
    await init_db(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
def sql_key_provider(session_factory) -> SqlKeyProvider:
    return SqlKeyProvider(session_factory, MASTER_KEY, iterations=ITERATIONS)


class TestSqlKeyProvider:
    @pytest.mark.asyncio
    async def test_create_and_fetch(self, sql_key_provider):
        info = await sql_key_provider.create_key()
        assert await sql_key_provider.get_active_key_id() == info.key_id
        assert len(await sql_key_provider.get_key(info.key_id)) == 32

    @pytest.mark.asyncio
    async def test_material_is_wrapped_at_rest(self, sql_key_provider, session_factory):
        info = await sql_key_provider.create_key()
        material = await sql_key_provider.get_key(info.key_id)

        async with session_factory() as db:
            record = (await db.execute(select(KeyRecord))).scalar_one()
        assert material not in record.wrapped_key
        assert material.hex().encode() not in record.wrapped_key

    @pytest.mark.asyncio
    async def test_material_survives_new_provider_instance(self, sql_key_provider, session_factory):
        info = await sql_key_provider.create_key()
        material = await sql_key_provider.get_key(info.key_id)

        fresh = SqlKeyProvider(session_factory, MASTER_KEY, iterations=ITERATIONS)
        assert await fresh.get_key(info.key_id) == material

    @pytest.mark.asyncio
    async def test_wrong_master_key(self, sql_key_provider, session_factory):
        info = await sql_key_provider.create_key()
        wrong = SqlKeyProvider(session_factory, "another_master_key_that_is_32chars!!", ITERATIONS)
        with pytest.raises(DecryptionFailedError):
            await wrong.get_key(info.key_id)

    @pytest.mark.asyncio
    async def test_empty_master_key_rejected(self, session_factory):
        with pytest.raises(InvalidParameterError):
            SqlKeyProvider(session_factory, "")

    @pytest.mark.asyncio
    async def test_rotation_invariant(self, sql_key_provider):
        old = await sql_key_provider.create_key()
        new = await sql_key_provider.rotate_key(old.key_id)

        keys = await sql_key_provider.list_keys()
        assert [k.key_id for k in keys if k.is_active] == [new.key_id]
        assert await sql_key_provider.get_key(old.key_id) != await sql_key_provider.get_key(new.key_id)

        with pytest.raises(KeyRotationFailedError):
            await sql_key_provider.rotate_key(old.key_id)
        with pytest.raises(KeyNotFoundError):
            await sql_key_provider.rotate_key("key-missing")

    @pytest.mark.asyncio
    async def test_concurrent_rotations(self, sql_key_provider):
        old = await sql_key_provider.create_key()
        results = await asyncio.gather(
            *(sql_key_provider.rotate_key(old.key_id) for _ in range(3)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert len([k for k in await sql_key_provider.list_keys() if k.is_active]) == 1

    @pytest.mark.asyncio
    async def test_second_active_key_refused(self, sql_key_provider):
        await sql_key_provider.create_key()
        with pytest.raises(KeyRotationFailedError):
            await sql_key_provider.create_key()

    @pytest.mark.asyncio
    async def test_no_active_key(self, sql_key_provider):
        with pytest.raises(NoActiveKeyError):
            await sql_key_provider.get_active_key_id()

    @pytest.mark.asyncio
    async def test_retire(self, sql_key_provider):
        old = await sql_key_provider.create_key()
        with pytest.raises(KeyRotationFailedError):
            await sql_key_provider.retire_key(old.key_id)

        await sql_key_provider.rotate_key(old.key_id)
        await sql_key_provider.retire_key(old.key_id)
        with pytest.raises(KeyNotFoundError):
            await sql_key_provider.get_key(old.key_id)


class TestSqlTokenMappingStore:
    @pytest.mark.asyncio
    async def test_store_and_lookup(self, session_factory):
        store = SqlTokenMappingStore(session_factory)
        mapping = TokenMapping(
            token="tok_1",
            original_value_hash="ab" * 32,
            encrypted_original_value=b"\x01ciphertext",
            key_id="key-1",
            expires_at=None,
        )
        await store.store(mapping)

        by_token = await store.get_by_token("tok_1")
        assert by_token == mapping
        assert by_token.created_at.tzinfo is not None
        assert await store.get_by_original_value_hash("ab" * 32) == mapping
        assert await store.get_by_token("tok_2") is None

    @pytest.mark.asyncio
    async def test_live_mapping_wins_for_hash(self, session_factory):
        store = SqlTokenMappingStore(session_factory)
        first = TokenMapping("tok_first", "cd" * 32, b"\x01a", "key-1")
        second = TokenMapping("tok_second", "cd" * 32, b"\x01b", "key-1")

        assert await store.store(first) == first
        assert await store.store(second) == first
        assert [m.token for m in await store.list_all()] == ["tok_first"]

    @pytest.mark.asyncio
    async def test_expired_mapping_is_replaced(self, session_factory):
        store = SqlTokenMappingStore(session_factory)
        expired = TokenMapping(
            "tok_old", "ef" * 32, b"\x01a", "key-1", expires_at=utcnow() - timedelta(seconds=1)
        )
        fresh = TokenMapping("tok_new", "ef" * 32, b"\x01b", "key-1")
        await store.store(expired)

        assert await store.store(fresh) == fresh
        assert await store.get_by_token("tok_old") is None
        assert (await store.get_by_original_value_hash("ef" * 32)).token == "tok_new"

    @pytest.mark.asyncio
    async def test_delete_by_key_id(self, session_factory):
        store = SqlTokenMappingStore(session_factory)
        await store.store(TokenMapping("tok_a", "01" * 32, b"\x01a", "key-1"))
        await store.store(TokenMapping("tok_b", "02" * 32, b"\x01b", "key-1"))
        await store.store(TokenMapping("tok_c", "03" * 32, b"\x01c", "key-2"))

        assert await store.delete_by_key_id("key-1") == 2
        assert [m.token for m in await store.list_all()] == ["tok_c"]


class TestSqlAuditStore:
    @pytest.mark.asyncio
    async def test_append_and_query(self, session_factory):
        store = SqlAuditStore(session_factory)
        first = AuditEntry(AuditOperation.TOKENIZED, subject_id="u1", key_id="key-1")
        second = AuditEntry(
            AuditOperation.DETOKENIZED,
            subject_id="u1",
            timestamp=first.timestamp + timedelta(seconds=1),
        )
        other = AuditEntry(AuditOperation.KEY_ROTATED, key_id="key-2")
        for entry in (first, second, other):
            await store.add_entry(entry)

        assert await store.get_by_subject_id("u1") == [first, second]
        assert len(await store.get_all()) == 3


class TestSqlEngine:
    @pytest.mark.asyncio
    async def test_tokenize_round_trip(self, session_factory, settings):
        engine = PrivacyEngine.from_session_factory(session_factory, settings=settings)
        await engine.initialize()

        token = await engine.tokenizer.tokenize("123-45-6789", subject_id="u1")
        assert await engine.tokenizer.tokenize("123-45-6789") == token
        assert await engine.tokenizer.detokenize(token) == "123-45-6789"

        operations = [e.operation for e in await engine.audit_store.get_by_subject_id("u1")]
        assert operations == [AuditOperation.TOKENIZED]

    @pytest.mark.asyncio
    async def test_concurrent_tokenize_shares_one_mapping(self, session_factory, settings):
        engine = PrivacyEngine.from_session_factory(session_factory, settings=settings)
        await engine.initialize()

        tokens = await asyncio.gather(*(engine.tokenizer.tokenize("alice") for _ in range(5)))

        assert len(set(tokens)) == 1
        assert len(await engine.token_store.list_all()) == 1
        assert await engine.tokenizer.detokenize(tokens[0]) == "alice"

    @pytest.mark.asyncio
    async def test_default_session_factory_from_settings(self, tmp_path, settings):
        configured = settings.model_copy(
            update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'configured.db'}"}
        )
        factory = get_session_factory(configured.database_url)
        await init_db(factory.kw["bind"])
        try:
            engine = PrivacyEngine.from_session_factory(settings=configured)
            await engine.initialize()
            token = await engine.tokenizer.tokenize("alice")

            async with factory() as db:
                records = (await db.execute(select(TokenMappingRecord))).scalars().all()
            assert [r.token for r in records] == [token]
        finally:
            await factory.kw["bind"].dispose()
            get_session_factory.cache_clear()
