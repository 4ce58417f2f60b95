"""Messaging schemas."""

from typing import List, Optional

from pydantic import BaseModel, Field

from config import MESSAGE_MAX_LENGTH


class SendMessageRequest(BaseModel):
    chat_id: Optional[int] = Field(None, alias="chatID", description="Existing chat to post into")
    receiver_id: Optional[int] = Field(
        None, alias="receiverID", description="Private chat peer; the chat is created on first message"
    )
    text: Optional[str] = Field(None, max_length=MESSAGE_MAX_LENGTH, example="hi")
    image: Optional[str] = Field(None, description="Base64 data URI, uploaded before the message is stored")
    reply_to: Optional[int] = Field(None, alias="replyTo")
    group_invite: Optional[int] = Field(None, alias="groupInvite")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {"receiverID": 2, "text": "hi", "replyTo": None}
        }


class EditMessageRequest(BaseModel):
    new_text: str = Field(..., alias="newText", max_length=MESSAGE_MAX_LENGTH)

    class Config:
        populate_by_name = True


class GroupInviteRequest(BaseModel):
    receiver_ids: List[int] = Field(..., alias="receiverIDs", min_length=1, max_length=50)
    group_invite: int = Field(..., alias="groupInvite")

    class Config:
        populate_by_name = True


class ClientEvent(BaseModel):
    """Inbound WebSocket frame."""

    event: str
    data: dict = Field(default_factory=dict)
