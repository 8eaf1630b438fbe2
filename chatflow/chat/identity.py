import logging

from chatflow.chat.store import RemoteStore
from chatflow.core.errors import InvalidConversationError, require_viewer

logger = logging.getLogger(__name__)

CREATE_DIRECT_CONVERSATION_RPC = "create_direct_conversation"


def pair_key(user_a: str, user_b: str) -> str:
    """Canonical key for an unordered user pair (matches `direct_pair_key` in SQL)."""
    u1, u2 = sorted([str(user_a), str(user_b)])
    return f"{u1}:{u2}"


class ConversationResolver:
    """
    Find or create the two-party conversation between the viewer and another user.

    The lookup is only a fast path: two clients can both miss and both ask
    for creation. The `create_direct_conversation` function enforces one
    conversation per pair through the unique `direct_pair_key` and returns
    the existing id when it loses that race.
    """

    def __init__(self, store: RemoteStore):
        self.store = store

    async def resolve(self, viewer_id, other_user_id) -> str:
        viewer_id = require_viewer(viewer_id)
        other_user_id = str(other_user_id)
        if not other_user_id or other_user_id == viewer_id:
            raise InvalidConversationError(
                "A conversation needs two different participants."
            )

        existing = await self.find_existing(viewer_id, other_user_id)
        if existing:
            return existing

        # Creation failures (constraint, permission, transport) go to the caller as-is
        conversation_id = await self.store.rpc(
            CREATE_DIRECT_CONVERSATION_RPC,
            {"_user_a": viewer_id, "_user_b": other_user_id},
        )
        conversation_id = str(conversation_id)
        logger.info(
            f"conversation_created id={conversation_id} pair={pair_key(viewer_id, other_user_id)}"
        )
        return conversation_id

    async def find_existing(self, viewer_id: str, other_user_id: str) -> str | None:
        own = await self.store.select(
            "conversation_participants", "conversation_id", eq={"user_id": viewer_id}
        )
        own_ids = [row["conversation_id"] for row in own]
        if not own_ids:
            return None

        shared = await self.store.select(
            "conversation_participants",
            "conversation_id",
            eq={"user_id": other_user_id},
            in_={"conversation_id": own_ids},
        )

        for row in shared:
            candidate = row["conversation_id"]
            members = await self.store.select(
                "conversation_participants",
                "user_id",
                eq={"conversation_id": candidate},
            )
            # Only exact two-party conversations qualify
            if len(members) == 2:
                return str(candidate)

        return None
