"""Text generation and conversation classification interfaces."""
from abc import ABC, abstractmethod
from enum import Enum
from typing import AsyncIterator, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from callbot.services.context.base import CallDirection, PromptBlocks

# Spoken when the caller has been quiet and no prompt could be generated
SILENCE_FALLBACK = "Are you still there? I am happy to help if you have any questions."


class GenerationRequest(BaseModel):
    """Everything the generation backend needs for one bot turn."""

    direction: CallDirection
    prompt_blocks: PromptBlocks
    history: List[Tuple[str, str]] = []  # (query, response) pairs, oldest first
    context: List[str] = []
    query: str
    language: str


class FollowUpStatus(str, Enum):
    """Whether the caller still wants to continue the conversation."""

    YES = "YES"
    NO = "NO"
    NOT_CLEAR = "NOT_CLEAR"
    NOT_MENTIONED = "NOT_MENTIONED"

    def __str__(self) -> str:
        return self.value


class CallSummary(BaseModel):
    """Post-call classification result."""

    sentiment: str
    potential_customer: bool
    summary: str


class ResponseGenerator(ABC):
    """Streaming text generation backend."""

    @abstractmethod
    def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        """Return an async iterator of text deltas.

        Closing the iterator (``aclose``) cancels the underlying request.
        Raises GenerationError on backend failure.
        """
        pass


class ConversationClassifier(ABC):
    """Short, non-streaming completions about the conversation itself."""

    @abstractmethod
    async def check_follow_up(
        self, turns: Sequence[Tuple[str, str]]
    ) -> Optional[FollowUpStatus]:
        """Decide whether the caller has further requests. None if unknown."""
        pass

    @abstractmethod
    async def silence_prompt(self, last_query: str, last_response: str) -> str:
        """Produce a short prompt asking whether the caller is still there."""
        pass

    @abstractmethod
    async def summarize(self, turns: Sequence[Tuple[str, str]]) -> Optional[CallSummary]:
        """Summarize the call and classify its sentiment."""
        pass
