from pydantic import BaseModel, ConfigDict, model_validator
from uuid import UUID
from datetime import datetime
from typing import List, Optional


"""
Stored rows
"""


class Profile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    email: Optional[str] = None
    username: Optional[str] = None
    avatar_url: Optional[str] = None


class Conversation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    created_at: datetime
    updated_at: datetime


class Participant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    user_id: str


class Message(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    conversation_id: str
    sender_id: str
    content: Optional[str] = None
    image_url: Optional[str] = None
    created_at: datetime


"""
Cache views
"""


class LastMessage(BaseModel):
    content: Optional[str] = None
    image_url: Optional[str] = None
    created_at: datetime


class EnrichedConversation(Conversation):
    participants: List[Profile] = []
    last_message: Optional[LastMessage] = None


class EnrichedMessage(Message):
    sender: Optional[Profile] = None


"""
chat/conversations/direct
"""


class CreateDirectConversationModel(BaseModel):
    receiver_id: UUID


class CreateDirectConversationResponseModel(BaseModel):
    conversation_id: str


"""
chat/conversations
"""


class GetConversationsResponseModel(BaseModel):
    conversations: List[EnrichedConversation]


"""
chat/messages
"""


class SendMessageModel(BaseModel):
    conversation_id: UUID
    content: Optional[str] = None
    image_url: Optional[str] = None

    @model_validator(mode="after")
    def validate_payload(self) -> "SendMessageModel":
        content = self.content.strip() if self.content else None
        if bool(content) == bool(self.image_url):
            raise ValueError("Provide exactly one of content or image_url.")
        self.content = content
        return self


class SendMessageResponseModel(BaseModel):
    message: EnrichedMessage


class GetMessagesResponseModel(BaseModel):
    messages: List[EnrichedMessage]
