"""
Tests for conversation models and their stored JSON form.
"""

import json
from datetime import datetime

import pytest
from pydantic import ValidationError as PydanticValidationError

from parley.session.models import (
    PREVIEW_LENGTH,
    Conversation,
    ConversationMetadata,
    ExportSnapshot,
    Message,
    Provider,
    TokenUsage,
)


def usage(total_tokens, prompt_cost=None, completion_cost=None, total_cost=None):
    return TokenUsage(
        total_tokens=total_tokens,
        prompt_cost=prompt_cost,
        completion_cost=completion_cost,
        total_cost=total_cost,
        provider=Provider.OPENAI,
        model="gpt-4o-mini",
    )


class TestTokenUsage:
    def test_total_cost_is_sum_of_parts(self):
        assert usage(10, prompt_cost=0.25, completion_cost=0.5).total_cost == 0.75

    def test_inconsistent_total_cost_is_replaced(self):
        assert usage(10, prompt_cost=0.25, completion_cost=0.5, total_cost=9.0).total_cost == 0.75

    def test_total_cost_kept_when_parts_unknown(self):
        assert usage(10, total_cost=0.1).total_cost == 0.1

    def test_camel_case_input(self):
        parsed = TokenUsage.model_validate(
            {"promptCost": 0.1, "completionCost": 0.2, "provider": "openai", "model": "gpt-4o"}
        )
        assert parsed.total_cost == pytest.approx(0.3)


class TestMessage:
    def test_defaults(self):
        message = Message(role="user", content="Hello")
        assert message.id
        assert not message.is_loading
        assert message.error is None
        assert isinstance(message.timestamp, datetime)

    def test_is_frozen(self):
        message = Message(role="user", content="Hello")
        with pytest.raises(PydanticValidationError):
            message.content = "changed"

    def test_rejects_unknown_role(self):
        with pytest.raises(PydanticValidationError):
            Message(role="tool", content="x")

    def test_serializes_camel_case(self):
        data = json.loads(Message(role="assistant", is_loading=True).to_json())
        assert data["isLoading"] is True
        assert "tokenUsage" in data


class TestConversation:
    def make(self):
        return Conversation(title="Chat", provider=Provider.OPENAI, model="gpt-4o-mini")

    def test_append_updates_timestamp(self):
        conversation = self.make()
        updated = conversation.append_messages(Message(role="user", content="Hi"))
        assert len(updated.messages) == 1
        assert conversation.messages == ()
        assert updated.updated_at >= conversation.updated_at

    def test_replace_keeps_position(self):
        first = Message(role="user", content="Hi")
        second = Message(role="assistant", is_loading=True)
        conversation = self.make().append_messages(first, second)

        replaced = conversation.replace_message(second.model_copy(update={"content": "Hello"}))

        assert [m.id for m in replaced.messages] == [first.id, second.id]
        assert replaced.messages[1].content == "Hello"

    def test_replace_unknown_message(self):
        with pytest.raises(KeyError):
            self.make().replace_message(Message(role="user"))

    def test_find_message(self):
        message = Message(role="user", content="Hi")
        conversation = self.make().append_messages(message)
        assert conversation.find_message(message.id) == message
        assert conversation.find_message("missing") is None

    def test_json_round_trip(self):
        conversation = self.make().append_messages(
            Message(role="user", content="Hi"),
            Message(role="assistant", content="Hello", token_usage=usage(7, 0.1, 0.2)),
        )
        restored = Conversation.model_validate_json(conversation.to_json())
        assert restored == conversation


class TestConversationMetadata:
    def test_short_preview_kept_verbatim(self):
        conversation = Conversation(
            title="t", provider="gemini", model="gemini-1.5-flash"
        ).append_messages(Message(role="assistant", content="line one\nline two"))

        entry = ConversationMetadata.from_conversation(conversation)

        assert entry.last_message_preview == "line one\nline two"
        assert entry.message_count == 1

    def test_long_preview_truncated_and_flattened(self):
        content = "a\n" * PREVIEW_LENGTH
        conversation = Conversation(
            title="t", provider="gemini", model="gemini-1.5-flash"
        ).append_messages(Message(role="assistant", content=content))

        preview = ConversationMetadata.from_conversation(conversation).last_message_preview

        assert len(preview) == PREVIEW_LENGTH
        assert "\n" not in preview

    def test_totals_summed_over_messages(self):
        conversation = Conversation(title="t", provider="openai", model="gpt-4o").append_messages(
            Message(role="assistant", content="a", token_usage=usage(10, 0.1, 0.2)),
            Message(role="assistant", content="b", token_usage=usage(5, 0.05, 0.05)),
            Message(role="user", content="c"),
        )

        entry = ConversationMetadata.from_conversation(conversation)

        assert entry.total_tokens == 15
        assert entry.total_cost == pytest.approx(0.4)

    def test_totals_absent_without_usage(self):
        conversation = Conversation(title="t", provider="openai", model="gpt-4o")
        entry = ConversationMetadata.from_conversation(conversation)
        assert entry.total_tokens is None
        assert entry.total_cost is None
        assert entry.last_message_preview == ""


class TestExportSnapshot:
    def test_wire_keys(self):
        conversation = Conversation(title="t", provider="openai", model="gpt-4o")
        snapshot = ExportSnapshot(conversations=[conversation], active_conversation_id=conversation.id)

        data = json.loads(snapshot.to_json())

        assert set(data) == {"chats", "activeChat", "exportDate"}
        assert data["activeChat"] == conversation.id
        assert data["chats"][0]["createdAt"]
