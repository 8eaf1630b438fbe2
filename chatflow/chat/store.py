"""
Data-access helpers over the Supabase async client.

Everything the sync layer needs from the remote side goes through
`RemoteStore`: PostgREST queries, inserts and updates, RPC calls,
realtime change subscriptions and storage uploads. Failures raised by the
client (`postgrest.exceptions.APIError`, `httpx` transport errors, ...)
are propagated untouched.
"""

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from supabase import AsyncClient

logger = logging.getLogger(__name__)


@dataclass
class ChangeEvent:
    """A row change delivered by the realtime feed."""

    table: str
    type: str
    record: dict = field(default_factory=dict)
    old_record: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, table: str, payload: Any) -> "ChangeEvent":
        # realtime-py nests the change under "data"; older payloads are flat
        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        return cls(
            table=data.get("table") or table,
            type=(data.get("type") or data.get("eventType") or "").upper(),
            record=dict(data.get("record") or data.get("new") or {}),
            old_record=dict(data.get("old_record") or data.get("old") or {}),
        )


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


class Subscription:
    """Handle for one realtime channel. `close()` may be called any number of times."""

    def __init__(self, client: AsyncClient, channel, topic: str):
        self._client = client
        self._channel = channel
        self.topic = topic
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._client.remove_channel(self._channel)
        logger.info(f"realtime_unsubscribed topic={self.topic}")


class RemoteStore:
    def __init__(self, client: AsyncClient, schema: str = "public"):
        self.client = client
        self.schema = schema
        self._tasks: set[asyncio.Task] = set()

    async def select(
        self,
        table: str,
        columns: str = "*",
        *,
        eq: Optional[dict] = None,
        neq: Optional[dict] = None,
        in_: Optional[dict[str, Iterable]] = None,
        or_: Optional[str] = None,
        order: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict]:
        """
        Run a filtered query against `table` and return its rows.

        An empty membership filter short-circuits to `[]` instead of sending
        `in.()` to PostgREST.
        """
        memberships = {key: [str(v) for v in values] for key, values in (in_ or {}).items()}
        if any(not values for values in memberships.values()):
            return []

        query = self.client.table(table).select(columns)
        for key, value in (eq or {}).items():
            query = query.eq(key, str(value))
        for key, value in (neq or {}).items():
            query = query.neq(key, str(value))
        for key, values in memberships.items():
            query = query.in_(key, values)
        if or_:
            query = query.or_(or_)
        if order:
            query = query.order(order, desc=desc)
        if limit is not None:
            query = query.limit(limit)

        response = await query.execute()
        return list(response.data or [])

    async def select_one(self, table: str, columns: str = "*", **filters) -> Optional[dict]:
        rows = await self.select(table, columns, limit=1, **filters)
        return rows[0] if rows else None

    async def insert(self, table: str, payload: dict) -> dict:
        response = await self.client.table(table).insert(payload).execute()
        return response.data[0]

    async def update(self, table: str, payload: dict, *, eq: dict) -> list[dict]:
        query = self.client.table(table).update(payload)
        for key, value in eq.items():
            query = query.eq(key, str(value))
        response = await query.execute()
        return list(response.data or [])

    async def rpc(self, function: str, params: dict) -> Any:
        response = await self.client.rpc(function, params).execute()
        return response.data

    async def subscribe(
        self,
        table: str,
        handler: ChangeHandler,
        *,
        event: str = "*",
        filter: Optional[str] = None,
    ) -> Subscription:
        """
        Listen for row changes on `table`.

        `handler` is awaited as a task on the running loop for every change;
        exceptions it raises are logged, not propagated to the realtime client.
        """
        topic = f"{table}:{filter or '*'}:{uuid.uuid4().hex[:8]}"

        def on_change(payload):
            change = ChangeEvent.from_payload(table, payload)
            task = asyncio.ensure_future(handler(change))
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

        channel = self.client.channel(topic)
        channel.on_postgres_changes(
            event, on_change, table=table, schema=self.schema, filter=filter
        )
        await channel.subscribe()
        logger.info(f"realtime_subscribed topic={topic} event={event}")
        return Subscription(self.client, channel, topic)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("realtime_handler_failed", exc_info=task.exception())

    async def upload(
        self, bucket: str, path: str, data: bytes, content_type: Optional[str] = None
    ) -> str:
        """Store `data` under `path` in `bucket` and return its public URL."""
        storage = self.client.storage.from_(bucket)
        options = {"content-type": content_type} if content_type else None
        await storage.upload(path, data, options)

        url = storage.get_public_url(path)
        if inspect.isawaitable(url):
            url = await url
        return url
