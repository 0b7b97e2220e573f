"""Resolve call context from the jobs and agents tables."""
import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from callbot.core.errors import ConfigResolutionError
from callbot.db.models import Job
from callbot.services.context.base import (
    CallContext,
    CallContextResolver,
    CallDirection,
    PromptBlocks,
)

logger = logging.getLogger(__name__)

LANGUAGE_CODES = {
    "english": "en-US",
    "spanish": "es-ES",
    "french": "fr-FR",
    "russian": "ru-RU",
}
DEFAULT_LANGUAGE_CODE = "en-US"

VOICES = {
    "female": "nova",
    "male": "onyx",
}
DEFAULT_VOICE = "nova"

JOB_DIRECTIONS = {
    "make calls": CallDirection.OUTBOUND,
    "answer calls": CallDirection.INBOUND,
}


def language_code_for(language: str) -> str:
    return LANGUAGE_CODES.get((language or "").strip().lower(), DEFAULT_LANGUAGE_CODE)


def voice_for(voice_type: str) -> str:
    return VOICES.get((voice_type or "").strip().lower(), DEFAULT_VOICE)


class DatabaseContextResolver(CallContextResolver):
    """Loads a job and its agent and turns them into a CallContext."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def resolve(self, job_id: int) -> CallContext:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Job).options(selectinload(Job.agent)).where(Job.id == job_id)
            )
            job = result.scalar_one_or_none()

        if job is None:
            raise ConfigResolutionError(f"Job {job_id} not found")
        if not job.active:
            raise ConfigResolutionError(f"Job {job_id} is not active")
        agent = job.agent
        if agent is None:
            raise ConfigResolutionError(f"Job {job_id} has no agent")

        direction = JOB_DIRECTIONS.get((job.job_type or "").strip().lower())
        if direction is None:
            raise ConfigResolutionError(f"Job {job_id} has unknown job type '{job.job_type}'")
        if not (agent.greeting_message or "").strip():
            raise ConfigResolutionError(f"Agent {agent.id} has no greeting message")

        context = CallContext(
            job_id=job.id,
            agent_id=agent.id,
            direction=direction,
            language=agent.language or "English",
            language_code=language_code_for(agent.language),
            voice=voice_for(agent.voice_type),
            prompt_blocks=PromptBlocks(
                company_introduction=agent.company_introduction or "",
                greeting_message=agent.greeting_message or "",
                eligibility_criteria=agent.eligibility_criteria or "",
                restrictions=agent.restrictions or "",
                end_requirements=agent.end_requirements or "",
            ),
            retrieval_index=agent.retrieval_index or None,
            retrieval_namespace=str(agent.id),
        )
        logger.info(
            f"[CONTEXT] Job {job_id}: agent={agent.id} direction={direction} "
            f"language={context.language_code} voice={context.voice}"
        )
        return context
