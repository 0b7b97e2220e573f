"""Call context model and resolver interface."""
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class CallDirection(str, Enum):
    """Who placed the call."""

    INBOUND = "inbound"  # "Answer Calls" jobs
    OUTBOUND = "outbound"  # "Make Calls" jobs

    def __str__(self) -> str:
        return self.value


class PromptBlocks(BaseModel):
    """Conversation-specific text blocks configured per agent."""

    company_introduction: str = ""
    greeting_message: str = ""
    eligibility_criteria: str = ""
    restrictions: str = ""
    end_requirements: str = ""


class CallContext(BaseModel):
    """Everything a session needs to know about the call before it starts."""

    job_id: int
    agent_id: int
    direction: CallDirection
    language: str = "English"
    language_code: str = "en-US"
    voice: str
    prompt_blocks: PromptBlocks
    retrieval_index: Optional[str] = None
    retrieval_namespace: Optional[str] = None


class CallContextResolver(ABC):
    """Looks up call context for a job."""

    @abstractmethod
    async def resolve(self, job_id: int) -> CallContext:
        """Resolve context for a job. Raises ConfigResolutionError."""
        pass
