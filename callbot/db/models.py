"""Database models."""
from datetime import datetime
from sqlalchemy import Boolean, Column, Integer, String, DateTime, ForeignKey, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Agent(Base):
    """Voice agent configuration: language, voice and prompt blocks."""

    __tablename__ = "agents"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    language = Column(String, default="English", nullable=False)
    voice_type = Column(String, default="Female", nullable=False)  # Female, Male
    retrieval_index = Column(String, nullable=True)
    company_introduction = Column(Text, nullable=True)
    greeting_message = Column(Text, nullable=True)
    eligibility_criteria = Column(Text, nullable=True)
    restrictions = Column(Text, nullable=True)
    end_requirements = Column(Text, nullable=True)

    # Relationships
    jobs = relationship("Job", back_populates="agent")


class Job(Base):
    """A calling job run by an agent."""

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=False)
    job_type = Column(String, nullable=False)  # Make Calls, Answer Calls
    active = Column(Boolean, default=True, nullable=False)

    # Relationships
    agent = relationship("Agent", back_populates="jobs")
    calls = relationship("Call", back_populates="job")


class Call(Base):
    """Call metadata model."""

    __tablename__ = "calls"

    id = Column(Integer, primary_key=True, index=True)
    call_sid = Column(String, unique=True, index=True, nullable=False)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=True)
    direction = Column(String, nullable=True)  # inbound, outbound
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    status = Column(String, default="in_progress", nullable=False)  # in_progress, completed, failed
    end_reason = Column(String, nullable=True)
    transcript = Column(Text, nullable=True)
    sentiment = Column(String, nullable=True)
    potential_customer = Column(Boolean, nullable=True)
    summary = Column(Text, nullable=True)

    # Relationships
    job = relationship("Job", back_populates="calls")
