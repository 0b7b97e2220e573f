"""Streaming response generation with OpenAI."""
import logging
from typing import AsyncIterator, Optional

from openai import AsyncOpenAI

from callbot.core.config import settings
from callbot.core.errors import GenerationError
from callbot.services.agent.base import GenerationRequest, ResponseGenerator
from callbot.services.agent.prompt import build_messages

logger = logging.getLogger(__name__)


class OpenAIResponseGenerator(ResponseGenerator):
    """Streams chat-completion deltas for one bot turn."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key)
        self.model = model or settings.generation_model

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        messages = build_messages(request)
        logger.debug(
            f"[GENERATION] {len(messages)} messages, {len(request.context)} context snippet(s), "
            f"query='{request.query}'"
        )
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=0.7,
                max_tokens=300,
                stream=True,
            )
        except Exception as e:
            raise GenerationError(f"Generation request failed: {e}") from e

        try:
            async for event in response:
                if not event.choices:
                    continue
                delta = event.choices[0].delta.content
                if delta:
                    yield delta
        except Exception as e:
            raise GenerationError(f"Generation stream failed: {e}") from e
        finally:
            await response.close()
