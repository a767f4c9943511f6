"""Conversation data model for Parley."""

from parley.session.models import (
    Conversation,
    ConversationMetadata,
    ExportSnapshot,
    Message,
    Provider,
    TokenUsage,
)

__all__ = [
    "Conversation",
    "ConversationMetadata",
    "ExportSnapshot",
    "Message",
    "Provider",
    "TokenUsage",
]
