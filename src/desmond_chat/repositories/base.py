"""Base store interface."""

from abc import ABC, abstractmethod
from typing import List

from ..domain.models import Conversation


class ConversationStore(ABC):
    """Abstract base class for durable conversation stores."""

    @abstractmethod
    async def load(self) -> List[Conversation]:
        """Read every persisted conversation, newest first."""
        pass

    @abstractmethod
    async def save(self, conversations: List[Conversation]) -> List[Conversation]:
        """Persist the full conversation list and return what was committed."""
        pass
