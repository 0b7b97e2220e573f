"""Retrieval backend interface."""
from abc import ABC, abstractmethod
from typing import List, Optional


class Retriever(ABC):
    """Returns context snippets relevant to a caller query."""

    # Used as the retrieval cache namespace prefix
    backend_id: str = "retriever"

    @abstractmethod
    async def retrieve(
        self, query: str, index_handle: Optional[str], namespace: Optional[str] = None
    ) -> List[str]:
        """Return zero or more snippets. The caller imposes the timeout."""
        pass


class NullRetriever(Retriever):
    """Retriever used when no retrieval backend is configured."""

    backend_id = "none"

    async def retrieve(
        self, query: str, index_handle: Optional[str], namespace: Optional[str] = None
    ) -> List[str]:
        return []
