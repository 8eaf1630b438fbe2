import asyncio
import logging
from typing import List, Optional

from chatflow.chat.cache import LiveCache
from chatflow.chat.schemas import (
    Conversation,
    EnrichedConversation,
    LastMessage,
    Participant,
    Profile,
)
from chatflow.chat.store import ChangeEvent, RemoteStore, Subscription
from chatflow.core.errors import require_viewer
from chatflow.utils.env_helper import env_float

logger = logging.getLogger(__name__)

DEFAULT_POLL_SECONDS = env_float("CONVERSATION_POLL_SECONDS", 10.0)


async def build_conversation_list(
    store: RemoteStore, viewer_id: str
) -> List[EnrichedConversation]:
    """
    Materialize the viewer's conversations, newest activity first.

    Each conversation carries the profiles of everyone but the viewer and
    its most recent message. Profiles that no longer exist are left out.
    """
    links = await store.select(
        "conversation_participants", "conversation_id", eq={"user_id": viewer_id}
    )
    conversation_ids = list(dict.fromkeys(row["conversation_id"] for row in links))
    if not conversation_ids:
        return []

    conversations = [
        Conversation.model_validate(row)
        for row in await store.select(
            "conversations",
            in_={"id": conversation_ids},
            order="updated_at",
            desc=True,
        )
    ]

    participants = [
        Participant.model_validate(row)
        for row in await store.select(
            "conversation_participants",
            "conversation_id, user_id",
            in_={"conversation_id": conversation_ids},
        )
    ]
    user_ids = list(dict.fromkeys(p.user_id for p in participants))
    profiles = {
        row["id"]: Profile.model_validate(row)
        for row in await store.select("profiles", in_={"id": user_ids})
    }

    # Newest first, so the first row seen per conversation is its last message
    last_messages: dict[str, LastMessage] = {}
    for row in await store.select(
        "messages",
        "conversation_id, content, image_url, created_at",
        in_={"conversation_id": conversation_ids},
        order="created_at",
        desc=True,
    ):
        if row["conversation_id"] not in last_messages:
            last_messages[row["conversation_id"]] = LastMessage.model_validate(row)

    result = []
    for conversation in conversations:
        others = []
        seen = set()
        for link in participants:
            if link.conversation_id != conversation.id or link.user_id == viewer_id:
                continue
            if link.user_id in seen or link.user_id not in profiles:
                continue
            seen.add(link.user_id)
            others.append(profiles[link.user_id])

        result.append(
            EnrichedConversation(
                **conversation.model_dump(),
                participants=others,
                last_message=last_messages.get(conversation.id),
            )
        )
    return result


def filter_conversations(
    conversations: List[EnrichedConversation], query: Optional[str]
) -> List[EnrichedConversation]:
    """Keep conversations whose participant usernames/emails contain `query`."""
    if not query:
        return list(conversations)

    needle = query.lower()
    matches = []
    for conversation in conversations:
        names = " ".join(
            (p.username or p.email or "") for p in conversation.participants
        ).lower()
        if needle in names:
            matches.append(conversation)
    return matches


class ConversationListCache(LiveCache[List[EnrichedConversation]]):
    """
    The viewer's conversation list, kept live.

    Freshness comes from two producers: a poll loop every `poll_interval`
    seconds and realtime events (any message insert, any conversation
    change). Both call `apply_change`/`invalidate`, which rebuild the whole
    list rather than patching it.
    """

    def __init__(
        self,
        store: RemoteStore,
        viewer_id,
        poll_interval: float = DEFAULT_POLL_SECONDS,
    ):
        self.viewer_id = require_viewer(viewer_id)
        super().__init__(key=f"conversations:{self.viewer_id}", empty=[])
        self.store = store
        self.poll_interval = poll_interval
        self._subscriptions: list[Subscription] = []
        self._poll_task: Optional[asyncio.Task] = None

    async def build(self) -> List[EnrichedConversation]:
        return await build_conversation_list(self.store, self.viewer_id)

    async def load(self) -> List[EnrichedConversation]:
        return await self.refresh()

    def get(self, conversation_id: str) -> Optional[EnrichedConversation]:
        for conversation in self.snapshot:
            if conversation.id == conversation_id:
                return conversation
        return None

    async def apply_change(self, event: ChangeEvent) -> None:
        logger.debug(f"conversation_list_event key={self.key} table={event.table} type={event.type}")
        self.invalidate()

    async def start(self) -> None:
        if self._poll_task is not None:
            return
        self._subscriptions = [
            await self.store.subscribe("messages", self.apply_change, event="INSERT"),
            await self.store.subscribe("conversations", self.apply_change, event="*"),
        ]
        self._poll_task = asyncio.ensure_future(self._poll())

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            self.invalidate()
            await self.wait_idle()

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        self.cancel_rebuild()
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await subscription.close()
