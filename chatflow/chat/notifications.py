import asyncio
import inspect
import logging
from typing import Optional, Protocol

from chatflow.chat.schemas import Message, Profile
from chatflow.utils.display import (
    DEFAULT_NOTIFICATION_TITLE,
    display_name,
    message_preview,
)

logger = logging.getLogger(__name__)


class AlertSurface(Protocol):
    """Where alerts end up (a websocket, a desktop notifier, ...)."""

    def permission_granted(self) -> bool: ...

    def show(self, title: str, body: str): ...


class NotificationDispatcher:
    """
    Fire-and-forget local alerts for incoming messages.

    `notify` is a no-op until a surface with granted permission is attached,
    and it never raises: surface failures are logged. Coroutine surfaces are
    scheduled on the running loop instead of awaited.
    """

    def __init__(self, surface: Optional[AlertSurface] = None):
        self.surface = surface
        self._pending: set[asyncio.Task] = set()

    def attach(self, surface: Optional[AlertSurface]) -> None:
        self.surface = surface

    def notify(self, title: str, body: str) -> None:
        surface = self.surface
        try:
            if surface is None or not surface.permission_granted():
                return
            result = surface.show(title, body)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._shown)
        except Exception:
            logger.exception("notification_failed")

    def notify_message(self, message: Message, sender: Optional[Profile]) -> None:
        self.notify(
            display_name(sender, fallback=DEFAULT_NOTIFICATION_TITLE),
            message_preview(message),
        )

    def _shown(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("notification_failed", exc_info=task.exception())
