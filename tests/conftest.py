"""
Conftest

`FakeStore` stands in for `RemoteStore` with in-memory tables. It yields
to the event loop on every call like a network round trip would, creates
direct conversations atomically per user pair like the SQL function does,
and lets tests push realtime changes with `emit`.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from chatflow.chat.identity import pair_key
from chatflow.chat.store import ChangeEvent


def _sort_key(value):
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


class FakeSubscription:
    def __init__(self, table, handler, event, filter):
        self.table = table
        self.handler = handler
        self.event = event
        self.filter = filter
        self.closed = False
        self.close_calls = 0

    async def close(self):
        self.close_calls += 1
        self.closed = True

    def matches(self, table, event_type, record):
        if self.closed or table != self.table:
            return False
        if self.event not in ("*", event_type):
            return False
        if self.filter:
            column, _, value = self.filter.partition("=eq.")
            return str(record.get(column)) == value
        return True


class FakeStore:
    def __init__(self):
        self.tables = {
            "profiles": [],
            "conversations": [],
            "conversation_participants": [],
            "messages": [],
        }
        self.subscriptions: list[FakeSubscription] = []
        self.uploads = {}
        self.calls = []
        self.failures = {}
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    # helpers for arranging state

    def tick(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def fail(self, op, table, error=None):
        self.failures[(op, table)] = error or RuntimeError(f"{op} {table} failed")

    def add_profile(self, user_id, email=None, username=None, avatar_url=None):
        row = {
            "id": user_id,
            "email": email or f"{user_id}@example.com",
            "username": username,
            "avatar_url": avatar_url,
        }
        self.tables["profiles"].append(row)
        return row

    def add_conversation(self, *user_ids, updated_at=None):
        created = self.tick()
        row = {
            "id": str(uuid.uuid4()),
            "created_at": created,
            "updated_at": updated_at or created,
            "direct_pair_key": pair_key(*user_ids) if len(user_ids) == 2 else None,
        }
        self.tables["conversations"].append(row)
        for user_id in user_ids:
            self.add_link(row["id"], user_id)
        return row["id"]

    def add_link(self, conversation_id, user_id):
        self.tables["conversation_participants"].append(
            {"conversation_id": conversation_id, "user_id": user_id}
        )

    def add_message(self, conversation_id, sender_id, content=None, image_url=None, created_at=None):
        row = {
            "id": str(uuid.uuid4()),
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "image_url": image_url,
            "created_at": created_at or self.tick(),
        }
        self.tables["messages"].append(row)
        return row

    def conversations_for_pair(self, user_a, user_b):
        members = {}
        for link in self.tables["conversation_participants"]:
            members.setdefault(link["conversation_id"], set()).add(link["user_id"])
        return [cid for cid, users in members.items() if users == {user_a, user_b}]

    async def emit(self, table, event_type, record):
        for subscription in list(self.subscriptions):
            if subscription.matches(table, event_type, record):
                await subscription.handler(
                    ChangeEvent(table=table, type=event_type, record=dict(record))
                )

    # RemoteStore interface

    async def _round_trip(self, op, table):
        await asyncio.sleep(0)
        self.calls.append((op, table))
        if (op, table) in self.failures:
            raise self.failures[(op, table)]

    async def select(
        self,
        table,
        columns="*",
        *,
        eq=None,
        neq=None,
        in_=None,
        or_=None,
        order=None,
        desc=False,
        limit=None,
    ):
        await self._round_trip("select", table)
        rows = [dict(row) for row in self.tables[table]]

        for key, value in (eq or {}).items():
            rows = [r for r in rows if str(r.get(key)) == str(value)]
        for key, value in (neq or {}).items():
            rows = [r for r in rows if str(r.get(key)) != str(value)]
        for key, values in (in_ or {}).items():
            wanted = {str(v) for v in values}
            rows = [r for r in rows if str(r.get(key)) in wanted]
        if or_:
            clauses = []
            for clause in or_.split(","):
                column, _, pattern = clause.split(".", 2)
                clauses.append((column, pattern.strip("%").lower()))
            rows = [
                r
                for r in rows
                if any(term in (r.get(column) or "").lower() for column, term in clauses)
            ]
        if order:
            rows.sort(key=lambda r: _sort_key(r.get(order)), reverse=desc)
        if limit is not None:
            rows = rows[:limit]
        if columns != "*":
            names = [c.strip() for c in columns.split(",")]
            rows = [{name: r.get(name) for name in names} for r in rows]
        return rows

    async def select_one(self, table, columns="*", **filters):
        rows = await self.select(table, columns, limit=1, **filters)
        return rows[0] if rows else None

    async def insert(self, table, payload):
        await self._round_trip("insert", table)
        row = {"id": str(uuid.uuid4()), **payload}
        if table in ("messages", "conversations"):
            row.setdefault("created_at", self.tick())
        self.tables[table].append(row)
        return dict(row)

    async def update(self, table, payload, *, eq):
        await self._round_trip("update", table)
        updated = []
        for row in self.tables[table]:
            if all(str(row.get(k)) == str(v) for k, v in eq.items()):
                row.update(payload)
                updated.append(dict(row))
        return updated

    async def rpc(self, function, params):
        await self._round_trip("rpc", function)
        assert function == "create_direct_conversation"
        user_a, user_b = params["_user_a"], params["_user_b"]
        key = pair_key(user_a, user_b)
        # No await below: the check and the insert are one atomic step
        for row in self.tables["conversations"]:
            if row.get("direct_pair_key") == key:
                return row["id"]
        created = self.tick()
        conversation_id = str(uuid.uuid4())
        self.tables["conversations"].append(
            {
                "id": conversation_id,
                "created_at": created,
                "updated_at": created,
                "direct_pair_key": key,
            }
        )
        self.add_link(conversation_id, user_a)
        self.add_link(conversation_id, user_b)
        return conversation_id

    async def subscribe(self, table, handler, *, event="*", filter=None):
        await self._round_trip("subscribe", table)
        subscription = FakeSubscription(table, handler, event, filter)
        self.subscriptions.append(subscription)
        return subscription

    async def upload(self, bucket, path, data, content_type=None):
        await self._round_trip("upload", bucket)
        self.uploads[(bucket, path)] = (data, content_type)
        return f"https://storage.test/{bucket}/{path}"


class RecordingSurface:
    def __init__(self, granted=True):
        self.granted = granted
        self.shown = []

    def permission_granted(self):
        return self.granted

    def show(self, title, body):
        self.shown.append((title, body))


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def surface():
    return RecordingSurface()


@pytest.fixture
def alice(store):
    store.add_profile("alice", email="alice@example.com", username="alice")
    return "alice"


@pytest.fixture
def bob(store):
    store.add_profile("bob", email="bob@example.com", username="bob")
    return "bob"


@pytest.fixture
def carol(store):
    store.add_profile("carol", email="carol@example.com", username=None)
    return "carol"
