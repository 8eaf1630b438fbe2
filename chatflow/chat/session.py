import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

from chatflow.chat.conversation_cache import (
    DEFAULT_POLL_SECONDS,
    ConversationListCache,
)
from chatflow.chat.identity import ConversationResolver
from chatflow.chat.notifications import NotificationDispatcher
from chatflow.chat.schemas import EnrichedConversation, EnrichedMessage
from chatflow.chat.store import RemoteStore
from chatflow.chat.thread_cache import MessageThreadCache
from chatflow.core.errors import require_viewer
from chatflow.utils.env_helper import env_float

logger = logging.getLogger(__name__)

DEFAULT_SESSION_IDLE_SECONDS = env_float("SESSION_IDLE_SECONDS", 300.0)


class ChatSession:
    """
    Everything the sync layer keeps for one signed-in viewer.

    A thread is only live (subscribed, notifying) while someone follows it.
    Followers are counted, so the thread closes when the last one leaves.
    """

    def __init__(
        self,
        store: RemoteStore,
        viewer_id,
        poll_interval: float = DEFAULT_POLL_SECONDS,
    ):
        self.viewer_id = require_viewer(viewer_id)
        self.store = store
        self.resolver = ConversationResolver(store)
        self.dispatcher = NotificationDispatcher()
        self.conversations = ConversationListCache(store, self.viewer_id, poll_interval)
        self.threads: Dict[str, MessageThreadCache] = {}
        self._followers: Dict[str, int] = {}
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self.conversations.start()
        self._started = True

    async def load_conversations(self) -> List[EnrichedConversation]:
        if not self.conversations.loaded:
            return await self.conversations.load()
        return self.conversations.snapshot

    async def resolve(self, other_user_id) -> str:
        conversation_id = await self.resolver.resolve(self.viewer_id, other_user_id)
        self.conversations.invalidate()
        return conversation_id

    def _new_thread(self, conversation_id: str) -> MessageThreadCache:
        return MessageThreadCache(
            self.store,
            conversation_id,
            self.viewer_id,
            dispatcher=self.dispatcher,
            conversations=self.conversations,
        )

    def thread(self, conversation_id) -> MessageThreadCache:
        """The followed thread for `conversation_id`, or a detached one-off cache."""
        conversation_id = str(conversation_id)
        return self.threads.get(conversation_id) or self._new_thread(conversation_id)

    async def read_thread(self, conversation_id) -> List[EnrichedMessage]:
        """Load a conversation without subscribing to it."""
        thread = self.threads.get(str(conversation_id))
        if thread is not None and thread.loaded:
            return thread.snapshot
        return await self.thread(conversation_id).load()

    async def follow(
        self, conversation_id, observer: Optional[Callable] = None
    ) -> Callable[[], None]:
        """
        Keep a conversation live for one follower.

        Returns the observer's unsubscribe callable (a no-op without an
        observer). Pair every successful call with `unfollow`.
        """
        conversation_id = str(conversation_id)
        thread = self.threads.get(conversation_id)
        if thread is None:
            thread = self._new_thread(conversation_id)
            self.threads[conversation_id] = thread
        self._followers[conversation_id] = self._followers.get(conversation_id, 0) + 1

        unsubscribe = thread.subscribe(observer) if observer else (lambda: None)
        try:
            if thread.is_open and thread.loaded:
                if observer:
                    observer(thread.snapshot)
            else:
                await thread.open()
        except Exception:
            unsubscribe()
            await self.unfollow(conversation_id)
            raise
        return unsubscribe

    async def unfollow(self, conversation_id) -> None:
        conversation_id = str(conversation_id)
        remaining = self._followers.get(conversation_id, 0) - 1
        if remaining > 0:
            self._followers[conversation_id] = remaining
            return
        self._followers.pop(conversation_id, None)
        thread = self.threads.pop(conversation_id, None)
        if thread is not None:
            await thread.close()

    def followers(self, conversation_id) -> int:
        return self._followers.get(str(conversation_id), 0)

    async def send(
        self,
        conversation_id,
        content: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> EnrichedMessage:
        return await self.thread(conversation_id).send(content=content, image_url=image_url)

    async def close(self) -> None:
        threads, self.threads = self.threads, {}
        self._followers = {}
        for thread in threads.values():
            await thread.close()
        await self.conversations.stop()
        self._started = False


class SessionRegistry:
    """
    One `ChatSession` per viewer id, created on first use.

    Sessions with no connected websocket are closed once they have been
    unused for `idle_timeout` seconds, either by `evict_idle()` or by the
    sweeper started with `start_sweeper()`.
    """

    def __init__(
        self,
        store: RemoteStore,
        poll_interval: float = DEFAULT_POLL_SECONDS,
        idle_timeout: float = DEFAULT_SESSION_IDLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.poll_interval = poll_interval
        self.idle_timeout = idle_timeout
        self.clock = clock
        self._sessions: Dict[str, ChatSession] = {}
        self._connections: Dict[str, int] = {}
        self._last_used: Dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def __contains__(self, viewer_id) -> bool:
        return str(viewer_id) in self._sessions

    async def get(self, viewer_id) -> ChatSession:
        viewer_id = require_viewer(viewer_id)
        async with self._lock:
            session = self._sessions.get(viewer_id)
            if session is None:
                session = ChatSession(self.store, viewer_id, self.poll_interval)
                await session.start()
                self._sessions[viewer_id] = session
                logger.info(f"chat_session_started viewer={viewer_id}")
            self._last_used[viewer_id] = self.clock()
            return session

    async def connect(self, viewer_id) -> ChatSession:
        """Get the viewer's session and pin it for a live connection."""
        session = await self.get(viewer_id)
        self._connections[session.viewer_id] = self._connections.get(session.viewer_id, 0) + 1
        return session

    async def disconnect(self, viewer_id) -> None:
        viewer_id = str(viewer_id)
        remaining = self._connections.get(viewer_id, 0) - 1
        if remaining > 0:
            self._connections[viewer_id] = remaining
        else:
            self._connections.pop(viewer_id, None)
        self._last_used[viewer_id] = self.clock()

    async def evict_idle(self) -> List[str]:
        """Close sessions that have no connection and have been idle too long."""
        now = self.clock()
        async with self._lock:
            expired = [
                viewer_id
                for viewer_id in self._sessions
                if not self._connections.get(viewer_id)
                and now - self._last_used.get(viewer_id, now) >= self.idle_timeout
            ]
            sessions = [self._sessions.pop(viewer_id) for viewer_id in expired]
            for viewer_id in expired:
                self._last_used.pop(viewer_id, None)

        for session in sessions:
            await self._close_session(session)
            logger.info(f"chat_session_evicted viewer={session.viewer_id}")
        return expired

    def start_sweeper(self, interval: Optional[float] = None) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.ensure_future(
                self._sweep(interval or max(self.idle_timeout / 2, 1.0))
            )

    async def _sweep(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.evict_idle()
            except Exception:
                logger.exception("chat_session_sweep_failed")

    async def _close_session(self, session: ChatSession) -> None:
        try:
            await session.close()
        except Exception:
            logger.exception(f"chat_session_close_failed viewer={session.viewer_id}")

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None
        async with self._lock:
            sessions, self._sessions = self._sessions, {}
            self._connections = {}
            self._last_used = {}
        for session in sessions.values():
            await self._close_session(session)
