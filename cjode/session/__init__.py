"""Conversation storage."""

import asyncio
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, AsyncIterator

from cjode.llm import Message
from cjode.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def new_conversation_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Conversation:
    """A conversation: system prompt first, then alternating user/assistant turns."""

    id: str
    messages: list[Message] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    def add_message(self, message: Message) -> None:
        self.messages.append(message)
        self.updated_at = _utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "messages": [message.to_dict() for message in self.messages],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def summary(self, preview_chars: int = 100) -> dict[str, Any]:
        """Listing entry: id, message count, truncated last message, last update."""
        last = self.messages[-1].content if self.messages else ""
        return {
            "conversationId": self.id,
            "messageCount": len(self.messages),
            "lastMessage": (last[:preview_chars] + "...") if len(last) > preview_chars else last,
            "updatedAt": self.updated_at,
        }


class ConversationStore(ABC):
    """Keyed, append-only conversation storage."""

    @abstractmethod
    async def get(self, conversation_id: str) -> list[Message] | None:
        """Return a copy of the conversation's messages, or ``None`` if unknown."""
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        pass

    @abstractmethod
    async def create_if_absent(self, conversation_id: str) -> Conversation:
        """Return the conversation, creating and seeding it when absent."""
        pass

    @abstractmethod
    async def append(self, conversation_id: str, message: Message) -> None:
        """Append a message, creating and seeding the conversation when absent."""
        pass

    @abstractmethod
    async def list_conversations(self) -> list[Conversation]:
        pass

    @abstractmethod
    def lock(self, conversation_id: str) -> Any:
        """Async context manager serializing work on one conversation."""
        pass


class InMemoryConversationStore(ConversationStore):
    """Process-local conversation store.

    New conversations are seeded with exactly one system message holding
    ``system_prompt``.
    """

    def __init__(self, system_prompt: str):
        self.system_prompt = system_prompt
        self._conversations: dict[str, Conversation] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _create(self, conversation_id: str) -> Conversation:
        conversation = Conversation(
            id=conversation_id,
            messages=[Message(role="system", content=self.system_prompt)],
        )
        self._conversations[conversation_id] = conversation
        log.info("Conversation created", conversation_id=conversation_id)
        return conversation

    async def get(self, conversation_id: str) -> list[Message] | None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        return [replace(message) for message in conversation.messages]

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    async def create_if_absent(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            conversation = self._create(conversation_id)
        return conversation

    async def append(self, conversation_id: str, message: Message) -> None:
        conversation = await self.create_if_absent(conversation_id)
        conversation.add_message(message)

    async def list_conversations(self) -> list[Conversation]:
        return list(self._conversations.values())

    @asynccontextmanager
    async def lock(self, conversation_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        async with lock:
            yield


# Global store instance
_store: ConversationStore | None = None


def get_conversation_store() -> ConversationStore:
    """Get the global conversation store."""
    global _store
    if _store is None:
        from cjode.instructions import SYSTEM_PROMPT, get_instruction_loader
        _store = InMemoryConversationStore(get_instruction_loader().load(SYSTEM_PROMPT))
    return _store


def set_conversation_store(store: ConversationStore | None) -> None:
    """Set the global conversation store."""
    global _store
    _store = store
