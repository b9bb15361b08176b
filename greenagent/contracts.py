from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from greenagent.storage.models import ParsedWork, Platform, SessionStep


class Sender(BaseModel):
    platform_id: str = Field(..., min_length=1)
    display_name: Optional[str] = None


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class CommandContent(BaseModel):
    type: Literal["command"] = "command"
    name: str
    args: List[str] = Field(default_factory=list)


class VoiceContent(BaseModel):
    type: Literal["voice"] = "voice"
    audio_ref: str
    mime_type: str = "audio/ogg"
    duration: Optional[float] = None


class CallbackContent(BaseModel):
    type: Literal["callback"] = "callback"
    data: str
    message_id: Optional[str] = None


class ImageContent(BaseModel):
    type: Literal["image"] = "image"
    image_ref: str
    mime_type: str = "image/jpeg"
    caption: Optional[str] = None


MessageContent = Annotated[
    Union[TextContent, CommandContent, VoiceContent, CallbackContent, ImageContent],
    Field(discriminator="type"),
]


class InboundMessage(BaseModel):
    """Platform-neutral message produced by a transport adapter."""

    id: str
    platform: Platform
    sender: Sender
    content: MessageContent
    locale: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class ResponseButton(BaseModel):
    label: str
    callback_data: Optional[str] = None
    url: Optional[str] = None


class OutboundResponse(BaseModel):
    text: str
    parse_mode: Optional[Literal["markdown", "html"]] = None
    buttons: Optional[List[ResponseButton]] = None
    attachments: Optional[List[str]] = None


class Command(str, Enum):
    START = "start"
    HELP = "help"
    JOIN = "join"
    STATUS = "status"
    PENDING = "pending"
    APPROVE = "approve"
    REJECT = "reject"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, name: str) -> "Command":
        """Resolve a raw command name (``/Start@bot``, ``status``) to a member."""
        normalized = name.strip().lstrip("/").split("@", 1)[0].lower()
        for member in cls:
            if member is not cls.UNKNOWN and member.value == normalized:
                return member
        return cls.UNKNOWN


class CallbackAction(str, Enum):
    CONFIRM_SUBMISSION = "confirm_submission"
    CANCEL_SUBMISSION = "cancel_submission"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, data: str) -> "CallbackAction":
        for member in cls:
            if member is not cls.UNKNOWN and member.value == data:
                return member
        return cls.UNKNOWN


@dataclass(frozen=True)
class SessionUpdate:
    step: SessionStep
    draft: Optional[ParsedWork] = None


@dataclass
class HandlerResult:
    """Response plus the session mutation the orchestrator should apply.

    ``clear_session`` takes precedence over ``set_session``.
    """

    response: OutboundResponse
    set_session: Optional[SessionUpdate] = None
    clear_session: bool = False


def reply(
    text: str,
    *,
    markdown: bool = False,
    buttons: Optional[List[ResponseButton]] = None,
    set_session: Optional[SessionUpdate] = None,
    clear_session: bool = False,
) -> HandlerResult:
    return HandlerResult(
        response=OutboundResponse(
            text=text, parse_mode="markdown" if markdown else None, buttons=buttons
        ),
        set_session=set_session,
        clear_session=clear_session,
    )
