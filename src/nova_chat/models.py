"""Pydantic models shared by the relay server, its clients and the session store."""
from __future__ import annotations

import uuid
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "system"]


def new_message_id() -> str:
    return uuid.uuid4().hex


# -----------------------------
# Conversation
# -----------------------------
class Message(BaseModel):
    """One conversation entry.

    Frozen: the role never changes, and a streaming assistant message grows by
    replacing it with a copy whose content has the delta appended.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id)
    role: Role
    content: str = ""
    images: Optional[List[str]] = None

    def has_images(self) -> bool:
        return bool(self.images)


class CustomPersonality(BaseModel):
    name: str
    description: str = ""
    prompt: str = ""


# -----------------------------
# Relay wire format
# -----------------------------
class ChatRequest(BaseModel):
    """Body of ``POST /chat``; the full history is resent every turn."""

    model_config = ConfigDict(populate_by_name=True)

    messages: List[Message] = Field(default_factory=list)
    personality: str = Field(default="CHAOS")
    custom_personality: Optional[CustomPersonality] = Field(
        default=None, alias="customPersonality"
    )


class ImageRequest(BaseModel):
    prompt: str = ""


class ImageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = ""
    image_url: Optional[str] = Field(default=None, alias="imageUrl")


class HistoryItem(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class PersonalityDesignRequest(BaseModel):
    message: str = ""
    history: List[HistoryItem] = Field(default_factory=list)


class PersonalityDesignResponse(BaseModel):
    response: str
    personality: Optional[CustomPersonality] = None


# -----------------------------
# Persisted sessions
# -----------------------------
class ChatSession(BaseModel):
    id: str
    name: str
    messages: List[Message] = Field(default_factory=list)
    personality: str = "CHAOS"
    custom_personality: Optional[CustomPersonality] = None
    created_at: str
    updated_at: str


class SessionCreate(BaseModel):
    name: str = Field(..., min_length=1)
    messages: List[Message] = Field(default_factory=list)
    personality: str = "CHAOS"
    custom_personality: Optional[CustomPersonality] = None


class SessionUpdate(BaseModel):
    """Fields left out of the body stay unchanged (see ``model_fields_set``)."""

    messages: List[Message] = Field(default_factory=list)
    personality: Optional[str] = None
    custom_personality: Optional[CustomPersonality] = None


class SessionRename(BaseModel):
    name: str = Field(..., min_length=1)
