"""Pydantic models for conversations and their stored form."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

PREVIEW_LENGTH = 100


class Provider(str, Enum):
    """Supported AI backends."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


Role = Literal["user", "assistant", "system"]


class _Record(BaseModel):
    """Immutable value with camelCase JSON keys."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TokenUsage(_Record):
    """Token counts and costs for one completion, normalized across providers."""

    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    prompt_cost: Optional[float] = None
    completion_cost: Optional[float] = None
    total_cost: Optional[float] = None
    provider: Provider
    model: str
    raw_provider_data: Optional[Dict[str, Any]] = None

    @model_validator(mode="before")
    @classmethod
    def _derive_total_cost(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        prompt_cost = data.get("prompt_cost", data.get("promptCost"))
        completion_cost = data.get("completion_cost", data.get("completionCost"))
        if prompt_cost is None or completion_cost is None:
            return data
        data = {k: v for k, v in data.items() if k not in ("total_cost", "totalCost")}
        data["total_cost"] = prompt_cost + completion_cost
        return data


class Message(_Record):
    """Single chat message.

    Assistant messages start as placeholders (``is_loading=True``) and are
    replaced in place until they complete or fail.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    content: str = ""
    role: Role
    timestamp: datetime = Field(default_factory=datetime.now)
    is_loading: bool = False
    error: Optional[str] = None
    token_usage: Optional[TokenUsage] = None


class Conversation(_Record):
    """Complete conversation with all messages."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str
    messages: Tuple[Message, ...] = ()
    provider: Provider
    model: str
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def append_messages(self, *messages: Message) -> "Conversation":
        return self.model_copy(
            update={"messages": self.messages + messages, "updated_at": datetime.now()}
        )

    def replace_message(self, message: Message) -> "Conversation":
        """Swap the message with the same id, keeping its position."""
        if not any(m.id == message.id for m in self.messages):
            raise KeyError(message.id)
        messages = tuple(message if m.id == message.id else m for m in self.messages)
        return self.model_copy(update={"messages": messages, "updated_at": datetime.now()})

    def find_message(self, message_id: str) -> Optional[Message]:
        return next((m for m in self.messages if m.id == message_id), None)


class ConversationMetadata(_Record):
    """Lightweight index entry derived from a Conversation."""

    id: str
    title: str
    message_count: int
    provider: Provider
    model: str
    created_at: datetime
    updated_at: datetime
    last_message_preview: str = ""
    total_tokens: Optional[int] = None
    total_cost: Optional[float] = None

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ConversationMetadata":
        preview = ""
        if conversation.messages:
            preview = conversation.messages[-1].content
            if len(preview) > PREVIEW_LENGTH:
                preview = preview[:PREVIEW_LENGTH].replace("\n", " ")

        usages = [m.token_usage for m in conversation.messages if m.token_usage]
        tokens = [u.total_tokens for u in usages if u.total_tokens is not None]
        costs = [u.total_cost for u in usages if u.total_cost is not None]

        return cls(
            id=conversation.id,
            title=conversation.title,
            message_count=len(conversation.messages),
            provider=conversation.provider,
            model=conversation.model,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            last_message_preview=preview,
            total_tokens=sum(tokens) if tokens else None,
            total_cost=sum(costs) if costs else None,
        )


class ExportSnapshot(_Record):
    """Every conversation plus the active id, as written by export."""

    conversations: List[Conversation] = Field(default_factory=list, alias="chats")
    active_conversation_id: Optional[str] = Field(default=None, alias="activeChat")
    exported_at: datetime = Field(default_factory=datetime.now, alias="exportDate")
