import bisect
import logging
from datetime import datetime, timezone
from typing import List, Optional

from chatflow.chat.cache import LiveCache
from chatflow.chat.conversation_cache import ConversationListCache
from chatflow.chat.notifications import NotificationDispatcher
from chatflow.chat.schemas import EnrichedMessage, Message, Profile
from chatflow.chat.store import ChangeEvent, RemoteStore, Subscription
from chatflow.core.errors import InvalidMessageError, require_viewer

logger = logging.getLogger(__name__)


def merge_messages(
    current: List[EnrichedMessage], incoming: List[EnrichedMessage]
) -> List[EnrichedMessage]:
    """Union by message id, ordered by `created_at`. Incoming rows replace cached ones."""
    by_id = {message.id: message for message in current}
    by_id.update({message.id: message for message in incoming})
    return sorted(by_id.values(), key=lambda m: m.created_at)


class MessageThreadCache(LiveCache[List[EnrichedMessage]]):
    """
    Ordered messages of one open conversation.

    Full loads and realtime inserts both land in `apply_message`/`merge`, so
    a message pushed before the first load finishes, or delivered twice
    (our own send echoed back by the feed), appears exactly once and in
    `created_at` order.
    """

    def __init__(
        self,
        store: RemoteStore,
        conversation_id: str,
        viewer_id,
        dispatcher: Optional[NotificationDispatcher] = None,
        conversations: Optional[ConversationListCache] = None,
    ):
        self.conversation_id = str(conversation_id)
        super().__init__(key=f"messages:{self.conversation_id}", empty=[])
        self.store = store
        self.viewer_id = require_viewer(viewer_id)
        self.dispatcher = dispatcher
        self.conversations = conversations
        self._subscription: Optional[Subscription] = None

    async def build(self) -> List[EnrichedMessage]:
        messages = [
            Message.model_validate(row)
            for row in await self.store.select(
                "messages",
                eq={"conversation_id": self.conversation_id},
                order="created_at",
            )
        ]
        sender_ids = list(dict.fromkeys(m.sender_id for m in messages))
        profiles = {
            row["id"]: Profile.model_validate(row)
            for row in await self.store.select("profiles", in_={"id": sender_ids})
        }
        return [
            EnrichedMessage(**m.model_dump(), sender=profiles.get(m.sender_id))
            for m in messages
        ]

    def merge(self, built: List[EnrichedMessage]) -> List[EnrichedMessage]:
        # Keep rows pushed while the load was in flight
        return merge_messages(self.snapshot, built)

    async def load(self) -> List[EnrichedMessage]:
        return await self.refresh()

    def apply_message(self, message: EnrichedMessage) -> List[EnrichedMessage]:
        if message.conversation_id != self.conversation_id:
            return self.snapshot

        messages = self.snapshot
        if any(existing.id == message.id for existing in messages):
            return messages

        if not messages or messages[-1].created_at <= message.created_at:
            updated = messages + [message]
        else:
            logger.info(
                f"message_out_of_order conversation={self.conversation_id} id={message.id}"
            )
            updated = list(messages)
            keys = [m.created_at for m in updated]
            updated.insert(bisect.bisect_right(keys, message.created_at), message)

        self.publish(updated)
        return updated

    async def fetch_profile(self, user_id: str) -> Optional[Profile]:
        row = await self.store.select_one("profiles", eq={"id": user_id})
        return Profile.model_validate(row) if row else None

    async def apply_change(self, event: ChangeEvent) -> None:
        if event.type and event.type != "INSERT":
            return
        message = Message.model_validate(event.record)
        try:
            sender = await self.fetch_profile(message.sender_id)
        except Exception as e:
            logger.warning(f"sender_profile_failed id={message.sender_id} error={e!r}")
            sender = None
        self.apply_message(EnrichedMessage(**message.model_dump(), sender=sender))

        if message.sender_id != self.viewer_id and self.dispatcher is not None:
            self.dispatcher.notify_message(message, sender)

    async def send(
        self, content: Optional[str] = None, image_url: Optional[str] = None
    ) -> EnrichedMessage:
        """
        Insert a message from the viewer and add it to the thread.

        Raises InvalidMessageError unless exactly one of `content` and
        `image_url` is given. Store failures on the insert propagate; the
        follow-up `updated_at` bump is best effort.
        """
        content = content.strip() if content else None
        if bool(content) == bool(image_url):
            raise InvalidMessageError("Provide exactly one of content or image_url.")

        row = await self.store.insert(
            "messages",
            {
                "conversation_id": self.conversation_id,
                "sender_id": self.viewer_id,
                "content": content,
                "image_url": image_url or None,
            },
        )
        message = Message.model_validate(row)

        try:
            await self.store.update(
                "conversations",
                {"updated_at": datetime.now(timezone.utc).isoformat()},
                eq={"id": self.conversation_id},
            )
        except Exception as e:
            logger.warning(
                f"conversation_touch_failed id={self.conversation_id} error={e!r}"
            )

        try:
            sender = await self.fetch_profile(self.viewer_id)
        except Exception as e:
            logger.warning(f"sender_profile_failed id={self.viewer_id} error={e!r}")
            sender = None

        enriched = EnrichedMessage(**message.model_dump(), sender=sender)
        self.apply_message(enriched)

        if self.conversations is not None:
            self.conversations.invalidate()

        logger.info(f"message_sent conversation={self.conversation_id} id={message.id}")
        return enriched

    async def open(self) -> List[EnrichedMessage]:
        """Subscribe to inserts for this conversation, then load it."""
        if self._subscription is None:
            self._subscription = await self.store.subscribe(
                "messages",
                self.apply_change,
                event="INSERT",
                filter=f"conversation_id=eq.{self.conversation_id}",
            )
        return await self.load()

    async def close(self) -> None:
        self.cancel_rebuild()
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    @property
    def is_open(self) -> bool:
        return self._subscription is not None
