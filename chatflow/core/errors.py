class ChatError(Exception):
    """Base class for errors raised by the sync layer itself."""


class NotAuthenticatedError(ChatError):
    """An operation needing a viewer was called without a signed-in user."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class InvalidMessageError(ChatError, ValueError):
    """A send was attempted without exactly one of content or image_url."""


class InvalidConversationError(ChatError, ValueError):
    """A two-party conversation was requested for an invalid user pair."""


def require_viewer(viewer_id):
    if not viewer_id:
        raise NotAuthenticatedError()
    return str(viewer_id)
