"""Context retrieval from Pinecone indexes."""
import asyncio
import logging
from typing import Dict, List, Optional

from openai import AsyncOpenAI
from pinecone import Pinecone

from callbot.core.config import settings
from callbot.core.errors import RetrievalError
from callbot.services.retrieval.base import Retriever

logger = logging.getLogger(__name__)


class PineconeRetriever(Retriever):
    """
    Embeds the query with OpenAI and looks it up in the agent's Pinecone index.

    The Pinecone client is synchronous, so queries run on a worker thread.
    Index handles are opened once per index name and reused.
    """

    backend_id = "pinecone"

    def __init__(
        self,
        api_key: Optional[str] = None,
        openai_client: Optional[AsyncOpenAI] = None,
        top_k: Optional[int] = None,
    ):
        self.pc = Pinecone(api_key=api_key or settings.pinecone_api_key)
        self.openai = openai_client or AsyncOpenAI(api_key=settings.openai_api_key)
        self.top_k = top_k or settings.retrieval_top_k
        self._indexes: Dict[str, object] = {}

    def _index(self, name: str):
        index = self._indexes.get(name)
        if index is None:
            index = self.pc.Index(name)
            self._indexes[name] = index
        return index

    async def retrieve(
        self, query: str, index_handle: Optional[str], namespace: Optional[str] = None
    ) -> List[str]:
        if not index_handle or not query.strip():
            return []
        try:
            embedding = await self.openai.embeddings.create(
                model=settings.embedding_model, input=query
            )
            vector = embedding.data[0].embedding
            index = self._index(index_handle)
            results = await asyncio.to_thread(
                index.query,
                vector=vector,
                top_k=self.top_k,
                namespace=namespace or "",
                include_metadata=True,
            )
        except Exception as e:
            raise RetrievalError(f"Pinecone query failed: {e}") from e

        snippets = []
        for match in results.matches:
            metadata = match.metadata or {}
            text = metadata.get("text") or metadata.get("chunk_text")
            if text:
                snippets.append(text)
        logger.debug(f"[RETRIEVAL] {len(snippets)} snippet(s) from {index_handle}/{namespace}")
        return snippets
