from typing import Optional

from chatflow.chat.schemas import Message, Profile

DEFAULT_NOTIFICATION_TITLE = "New message"
IMAGE_PLACEHOLDER = "Sent an image"
UNKNOWN_USER = "Unknown"


def display_name(profile: Optional[Profile], fallback: str = UNKNOWN_USER) -> str:
    """Username, falling back to email, falling back to `fallback`."""

    if profile is None:
        return fallback
    return profile.username or profile.email or fallback


def message_preview(message: Message) -> str:
    """Text shown for a message in notifications and the conversation list."""

    if message.content:
        return message.content
    if message.image_url:
        return IMAGE_PLACEHOLDER
    return ""
