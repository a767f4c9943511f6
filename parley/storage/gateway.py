"""Durable storage for the conversation index and conversation bodies."""

import json
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, List, Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from parley.session.models import Conversation, ConversationMetadata
from parley.utils.errors import PersistenceError, ValidationError
from parley.utils.logging import get_logger

logger = get_logger(__name__)

METADATA_KEY = "chat_metadata"
ACTIVE_KEY = "activeChat"
CONVERSATION_PREFIX = "chat_data_"

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
_metadata_list = TypeAdapter(List[ConversationMetadata])


def conversation_key(conversation_id: str) -> str:
    if not _SAFE_ID.match(conversation_id):
        raise ValidationError(f"Invalid conversation id: {conversation_id!r}")
    return f"{CONVERSATION_PREFIX}{conversation_id}"


class PersistenceGateway(ABC):
    """Key-value store consumed by ConversationStore.

    Every write either fully lands or raises PersistenceError.
    """

    @abstractmethod
    def get_metadata_index(self) -> Optional[List[ConversationMetadata]]:
        pass

    @abstractmethod
    def put_metadata_index(self, entries: List[ConversationMetadata]) -> None:
        pass

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        pass

    @abstractmethod
    def put_conversation(self, conversation: Conversation) -> None:
        pass

    @abstractmethod
    def delete_conversation(self, conversation_id: str) -> None:
        pass

    @abstractmethod
    def get_active_conversation_id(self) -> Optional[str]:
        pass

    @abstractmethod
    def put_active_conversation_id(self, conversation_id: Optional[str]) -> None:
        """Store the active id; None clears it"""
        pass


class JsonFileGateway(PersistenceGateway):
    """One JSON document per key inside a directory, written atomically."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create storage directory {self.directory}: {e}") from e
        logger.debug(f"JsonFileGateway initialized with dir: {self.directory}")

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def _read(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Failed to read {path}: {e}") from e

    def _write(self, key: str, data: str) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(data)
            tmp_path.replace(path)
        except OSError as e:
            logger.error(f"Failed to write {path}: {e}")
            if tmp_path.exists():
                tmp_path.unlink()
            raise PersistenceError(f"Failed to write {path}: {e}") from e

    def _delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Failed to delete {path}: {e}") from e

    def get_metadata_index(self) -> Optional[List[ConversationMetadata]]:
        data = self._read(METADATA_KEY)
        if data is None:
            return None
        try:
            return _metadata_list.validate_json(data)
        except PydanticValidationError as e:
            logger.warning(f"Corrupted conversation index {self._path(METADATA_KEY)}: {e}")
            return None

    def put_metadata_index(self, entries: List[ConversationMetadata]) -> None:
        self._write(
            METADATA_KEY,
            _metadata_list.dump_json(entries, by_alias=True, indent=2).decode("utf-8"),
        )

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        data = self._read(conversation_key(conversation_id))
        if data is None:
            return None
        try:
            return Conversation.model_validate_json(data)
        except PydanticValidationError as e:
            logger.warning(f"Corrupted conversation {conversation_id}: {e}")
            return None

    def put_conversation(self, conversation: Conversation) -> None:
        self._write(
            conversation_key(conversation.id),
            conversation.model_dump_json(by_alias=True, indent=2),
        )

    def delete_conversation(self, conversation_id: str) -> None:
        self._delete(conversation_key(conversation_id))

    def get_active_conversation_id(self) -> Optional[str]:
        data = self._read(ACTIVE_KEY)
        if data is None:
            return None
        try:
            value: Any = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning(f"Corrupted active conversation marker: {e}")
            return None
        return value if isinstance(value, str) else None

    def put_active_conversation_id(self, conversation_id: Optional[str]) -> None:
        if conversation_id is None:
            self._delete(ACTIVE_KEY)
        else:
            self._write(ACTIVE_KEY, json.dumps(conversation_id))
