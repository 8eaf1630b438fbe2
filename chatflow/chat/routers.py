import asyncio
import json
import logging
import os
import time
from typing import Optional

from dotenv import load_dotenv
from fastapi import (
    APIRouter,
    Depends,
    File,
    HTTPException,
    Query,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)

from chatflow.chat.conversation_cache import filter_conversations
from chatflow.chat.session import ChatSession, SessionRegistry
from chatflow.chat.store import RemoteStore
from chatflow.core.dependencies import (
    decode_token,
    get_session,
    get_store,
)
from chatflow.core.errors import (
    InvalidConversationError,
    InvalidMessageError,
    NotAuthenticatedError,
)

from .schemas import (
    CreateDirectConversationModel,
    CreateDirectConversationResponseModel,
    GetConversationsResponseModel,
    GetMessagesResponseModel,
    SendMessageModel,
    SendMessageResponseModel,
)


load_dotenv()
logger = logging.getLogger(__name__)
router = APIRouter()

CHAT_IMAGES_BUCKET = os.getenv("CHAT_IMAGES_BUCKET", "chat-images")
ALLOWED_IMAGE_TYPES = {"image/png", "image/jpeg", "image/gif", "image/webp"}


async def ensure_member(store: RemoteStore, conversation_id: str, viewer_id: str):
    membership = await store.select_one(
        "conversation_participants",
        "conversation_id",
        eq={"conversation_id": conversation_id, "user_id": viewer_id},
    )
    if not membership:
        raise HTTPException(
            status_code=403, detail="You are not a member of this conversation"
        )


@router.get(
    "/conversations",
    response_model=GetConversationsResponseModel,
    status_code=200,
)
async def get_conversations(
    q: Optional[str] = Query(default=None, max_length=100),
    session: ChatSession = Depends(get_session),
):
    """
    Retrieve the authenticated user's conversations, most recently active first.

    Served from the user's conversation cache, which is loaded on the first
    call and then kept fresh by polling and realtime events.

    **Query**
    - `q`: Optional case-insensitive filter on the other participant's
      username or email.

    **Returns**
    - `conversations`: List of conversations, each with
        - `participants`: Profiles of the other participant(s)
        - `last_message`: Most recent message, if any

    **Errors**
    - 401: Missing, invalid or expired token
    - 500: Database or unexpected server error
    """
    try:
        conversations = await session.load_conversations()
    except Exception as e:
        logger.error(f"conversation_load_failed viewer={session.viewer_id} error={e!r}")
        raise HTTPException(status_code=500, detail="Failed to fetch conversations")

    return {"conversations": filter_conversations(conversations, q)}


@router.post(
    "/conversations/direct",
    response_model=CreateDirectConversationResponseModel,
    status_code=200,
)
async def get_or_create_direct_conversation(
    data: CreateDirectConversationModel,
    session: ChatSession = Depends(get_session),
):
    """
    Get or create the direct (1-on-1) conversation with another user.

    If a two-party conversation between the two users already exists it is
    returned; otherwise one is created atomically by the database, which
    also settles concurrent creation attempts for the same pair.

    **Input**
    - `receiver_id`: UUID of the other user

    **Returns**
    - `conversation_id`: UUID of the direct conversation

    **Errors**
    - 400: Receiver is the authenticated user
    - 401: Unauthorized
    - 500: Database error
    """
    try:
        conversation_id = await session.resolve(data.receiver_id)
    except InvalidConversationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"conversation_resolve_failed viewer={session.viewer_id} error={e!r}")
        raise HTTPException(
            status_code=500,
            detail="Failed to create or fetch conversation.",
        )

    return {"conversation_id": conversation_id}


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=GetMessagesResponseModel,
    status_code=200,
)
async def get_messages(
    conversation_id: str,
    session: ChatSession = Depends(get_session),
    store: RemoteStore = Depends(get_store),
):
    """
    Retrieve all messages for a conversation, oldest to newest.

    A one-off read: live updates are only delivered to websocket clients
    that follow the conversation.

    **Errors**
    - 401: Invalid or expired authentication token
    - 403: User is not a member of the conversation
    - 500: Database or unexpected server error
    """
    try:
        await ensure_member(store, conversation_id, session.viewer_id)
        messages = await session.read_thread(conversation_id)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"thread_load_failed conversation={conversation_id} error={e!r}")
        raise HTTPException(status_code=500, detail="Failed to retrieve messages")

    return {"messages": messages}


@router.post(
    "/messages",
    response_model=SendMessageResponseModel,
    status_code=201,
)
async def send_message(
    data: SendMessageModel,
    session: ChatSession = Depends(get_session),
    store: RemoteStore = Depends(get_store),
):
    """
    Send a text or image message to a conversation.

    **Input**
    - `conversation_id`: UUID of the conversation
    - `content`: Message text, or
    - `image_url`: Public URL of an uploaded image

    Exactly one of `content` and `image_url` must be provided.

    **Returns**
    - The new message, with the sender's profile attached

    **Errors**
    - 401: Unauthorized
    - 403: User is not a member of the conversation
    - 422: Neither or both of content and image_url given
    - 500: Database error
    """
    conversation_id = str(data.conversation_id)
    try:
        await ensure_member(store, conversation_id, session.viewer_id)
        message = await session.send(
            conversation_id, content=data.content, image_url=data.image_url
        )
    except HTTPException:
        raise
    except InvalidMessageError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        logger.error(f"message_send_failed conversation={conversation_id} error={e!r}")
        raise HTTPException(status_code=500, detail="Failed to send message.")

    return {"message": message}


@router.post(
    "/conversations/{conversation_id}/images",
    response_model=SendMessageResponseModel,
    status_code=201,
)
async def send_image(
    conversation_id: str,
    file: UploadFile = File(...),
    session: ChatSession = Depends(get_session),
    store: RemoteStore = Depends(get_store),
):
    """
    Upload an image to storage and send it as a message.

    The file is stored under `<user id>/<unix millis>.<ext>` in the chat
    images bucket and its public URL becomes the message's `image_url`.

    **Errors**
    - 400: Not an image
    - 401: Unauthorized
    - 403: User is not a member of the conversation
    - 500: Upload or database error
    """
    if file.content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(status_code=400, detail="Only image uploads are allowed.")

    filename = file.filename or ""
    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
    path = f"{session.viewer_id}/{int(time.time() * 1000)}.{extension}"

    try:
        await ensure_member(store, conversation_id, session.viewer_id)
        image_url = await store.upload(
            CHAT_IMAGES_BUCKET, path, await file.read(), file.content_type
        )
        message = await session.send(conversation_id, image_url=image_url)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"image_send_failed conversation={conversation_id} error={e!r}")
        raise HTTPException(status_code=500, detail="Failed to upload image")

    return {"message": message}


class WebSocketSurface:
    """Delivers notifications as frames once the client grants permission."""

    def __init__(self, outbox: asyncio.Queue):
        self.outbox = outbox
        self.granted = False

    def permission_granted(self) -> bool:
        return self.granted

    def show(self, title: str, body: str):
        self.outbox.put_nowait({"type": "notification", "title": title, "body": body})


def _frame(kind: str, items) -> dict:
    return {"type": kind, "data": [item.model_dump(mode="json") for item in items]}


def _parse_frame(raw: str) -> Optional[dict]:
    try:
        frame = json.loads(raw)
    except ValueError:
        return None
    return frame if isinstance(frame, dict) else None


@router.websocket("/ws")
async def chat_socket(
    websocket: WebSocket,
    token: Optional[str] = Query(default=None),
):
    """
    Live view of the conversation list and one followed conversation.

    Client frames (JSON objects):
    - `{"type": "open", "conversation_id": ...}` follow a conversation
    - `{"type": "close"}` stop following it
    - `{"type": "notifications", "granted": true}` allow notification frames

    Server frames: `conversations`, `messages`, `notification`, `error`.
    """
    try:
        viewer_id = str(decode_token(token)["sub"])
    except NotAuthenticatedError:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    sessions: SessionRegistry = websocket.app.state.sessions
    session = await sessions.connect(viewer_id)
    outbox: asyncio.Queue = asyncio.Queue()
    surface = WebSocketSurface(outbox)
    session.dispatcher.attach(surface)

    unsubscribe = []
    following: Optional[str] = None
    thread_unsubscribe = None

    async def stop_following():
        nonlocal following, thread_unsubscribe
        if thread_unsubscribe is not None:
            thread_unsubscribe()
            thread_unsubscribe = None
        if following is not None:
            conversation_id, following = following, None
            await session.unfollow(conversation_id)

    async def pump():
        while True:
            await websocket.send_json(await outbox.get())

    sender = asyncio.ensure_future(pump())
    try:
        outbox.put_nowait(_frame("conversations", await session.load_conversations()))
        unsubscribe.append(
            session.conversations.subscribe(
                lambda items: outbox.put_nowait(_frame("conversations", items))
            )
        )
        while True:
            frame = _parse_frame(await websocket.receive_text())
            if frame is None:
                outbox.put_nowait({"type": "error", "detail": "Frames must be JSON objects."})
                continue
            kind = frame.get("type")

            if kind == "notifications":
                surface.granted = bool(frame.get("granted"))
            elif kind in ("open", "close"):
                await stop_following()
                if kind == "open":
                    conversation_id = str(frame.get("conversation_id"))
                    try:
                        await ensure_member(session.store, conversation_id, viewer_id)
                        thread_unsubscribe = await session.follow(
                            conversation_id,
                            lambda items: outbox.put_nowait(_frame("messages", items)),
                        )
                        following = conversation_id
                    except HTTPException as e:
                        outbox.put_nowait({"type": "error", "detail": e.detail})
                    except Exception as e:
                        logger.error(f"thread_open_failed conversation={conversation_id} error={e!r}")
                        outbox.put_nowait({"type": "error", "detail": "Failed to retrieve messages"})
            else:
                outbox.put_nowait({"type": "error", "detail": f"Unknown frame type: {kind}"})
    except WebSocketDisconnect:
        logger.info(f"chat_socket_closed viewer={viewer_id}")
    finally:
        sender.cancel()
        for undo in unsubscribe:
            undo()
        await stop_following()
        if session.dispatcher.surface is surface:
            session.dispatcher.attach(None)
        await sessions.disconnect(viewer_id)
