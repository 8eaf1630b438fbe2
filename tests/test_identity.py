import asyncio

import pytest

from chatflow.chat.identity import ConversationResolver, pair_key
from chatflow.chat.models import create_direct_conversation_sql, SCHEMA_SQL
from chatflow.core.errors import InvalidConversationError, NotAuthenticatedError


@pytest.mark.asyncio
async def test_resolve_creates_then_reuses(store, alice, bob):
    resolver = ConversationResolver(store)

    first = await resolver.resolve(alice, bob)
    second = await resolver.resolve(alice, bob)

    assert first == second
    assert store.conversations_for_pair(alice, bob) == [first]
    assert [c for c in store.calls if c[0] == "rpc"] == [("rpc", "create_direct_conversation")]


@pytest.mark.asyncio
async def test_resolve_is_symmetric(store, alice, bob):
    resolver = ConversationResolver(store)

    assert await resolver.resolve(alice, bob) == await resolver.resolve(bob, alice)


@pytest.mark.asyncio
async def test_concurrent_resolve_yields_one_conversation(store, alice, bob):
    resolver = ConversationResolver(store)

    ids = await asyncio.gather(
        resolver.resolve(alice, bob),
        resolver.resolve(bob, alice),
    )

    assert ids[0] == ids[1]
    assert len(store.tables["conversations"]) == 1
    assert store.conversations_for_pair(alice, bob) == [ids[0]]


@pytest.mark.asyncio
async def test_existing_conversation_found_without_rpc(store, alice, bob):
    existing = store.add_conversation(alice, bob)

    assert await ConversationResolver(store).resolve(alice, bob) == existing
    assert not [c for c in store.calls if c[0] == "rpc"]


@pytest.mark.asyncio
async def test_group_conversation_is_not_reused(store, alice, bob, carol):
    group = store.add_conversation(alice, bob, carol)

    conversation_id = await ConversationResolver(store).resolve(alice, bob)

    assert conversation_id != group
    assert store.conversations_for_pair(alice, bob) == [conversation_id]


@pytest.mark.asyncio
async def test_resolve_requires_viewer(store, bob):
    with pytest.raises(NotAuthenticatedError):
        await ConversationResolver(store).resolve(None, bob)


@pytest.mark.asyncio
async def test_resolve_rejects_self_conversation(store, alice):
    with pytest.raises(InvalidConversationError):
        await ConversationResolver(store).resolve(alice, alice)


@pytest.mark.asyncio
async def test_creation_failure_propagates(store, alice, bob):
    error = PermissionError("permission denied for function create_direct_conversation")
    store.fail("rpc", "create_direct_conversation", error)

    with pytest.raises(PermissionError) as excinfo:
        await ConversationResolver(store).resolve(alice, bob)

    assert excinfo.value is error
    assert store.tables["conversations"] == []


def test_pair_key_is_order_independent():
    assert pair_key("b", "a") == pair_key("a", "b") == "a:b"


def test_schema_defines_pair_uniqueness():
    assert "create_direct_conversation(_user_a UUID, _user_b UUID)" in create_direct_conversation_sql
    assert "ON CONFLICT (direct_pair_key) DO NOTHING" in create_direct_conversation_sql
    assert any("UNIQUE (direct_pair_key)" in sql for sql in SCHEMA_SQL)
