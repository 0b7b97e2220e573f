"""Short JSON-mode completions about the conversation."""
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from openai import AsyncOpenAI

from callbot.core.config import settings
from callbot.services.agent.base import (
    SILENCE_FALLBACK,
    CallSummary,
    ConversationClassifier,
    FollowUpStatus,
)
from callbot.services.agent.prompt import (
    get_follow_up_prompt,
    get_silence_messages,
    get_summary_prompt,
)

logger = logging.getLogger(__name__)


class OpenAIConversationClassifier(ConversationClassifier):
    """Follow-up detection, silence prompts and post-call summaries."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key)
        self.model = model or settings.classifier_model

    async def _json_completion(self, prompt: str, max_tokens: int) -> Dict[str, Any]:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content or "{}"
        return json.loads(content)

    async def check_follow_up(
        self, turns: Sequence[Tuple[str, str]]
    ) -> Optional[FollowUpStatus]:
        """
        Classify whether the caller wants to continue.

        Returns None when there is nothing to classify or the call fails, which
        the session treats as continued interest.
        """
        recent: List[Tuple[str, str]] = list(turns)[-settings.follow_up_history_turns:]
        if not recent:
            return None
        try:
            result = await self._json_completion(get_follow_up_prompt(recent), max_tokens=100)
        except Exception as e:
            logger.error(f"[CLASSIFIER] Follow-up check failed: {type(e).__name__}: {e}")
            return None
        raw = str(result.get("FollowUpQueries", "")).strip().upper()
        try:
            status = FollowUpStatus(raw)
        except ValueError:
            logger.warning(f"[CLASSIFIER] Unexpected follow-up value: {raw!r}")
            return None
        logger.info(f"[CLASSIFIER] Follow-up: {status} ({result.get('reason', '')})")
        return status

    async def silence_prompt(self, last_query: str, last_response: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=get_silence_messages(last_query, last_response),
                temperature=0.7,
                max_tokens=150,
            )
            text = (response.choices[0].message.content or "").strip()
        except Exception as e:
            logger.error(f"[CLASSIFIER] Silence prompt failed: {type(e).__name__}: {e}")
            return SILENCE_FALLBACK
        return text or SILENCE_FALLBACK

    async def summarize(self, turns: Sequence[Tuple[str, str]]) -> Optional[CallSummary]:
        """Sentiment, customer potential and a short summary. Needs two turns."""
        if len(turns) < 2:
            return None
        try:
            result = await self._json_completion(get_summary_prompt(turns), max_tokens=1024)
            summary = CallSummary(
                sentiment=str(result.get("Sentiment", "Neutral")),
                potential_customer=str(result.get("PotentialCustomer", "NO")).strip().upper() == "YES",
                summary=str(result.get("Summary", "")),
            )
        except Exception as e:
            logger.error(f"[CLASSIFIER] Summary failed: {type(e).__name__}: {e}")
            return None
        logger.info(f"[CLASSIFIER] Summary: sentiment={summary.sentiment} potential={summary.potential_customer}")
        return summary
