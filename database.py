"""
database.py — SQLAlchemy models and session management for agent activity.

Uses PostgreSQL in production (via DATABASE_URL).
Falls back to SQLite locally so you can develop without Postgres.
"""

import logging
import os
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

logger = logging.getLogger("seo-agent")

# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./seo_agent.db")

# Some hosts expose postgres:// but SQLAlchemy requires postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)


def make_engine(url: str) -> Engine:
    return create_engine(
        url,
        # SQLite needs this flag; ignored by Postgres
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
        pool_pre_ping=True,   # drop stale connections before use
    )


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class AgentEvent(Base):
    """One row per executed tool invocation."""

    __tablename__ = "agent_events"

    id          = Column(String(36), primary_key=True)
    user_token  = Column(String(255), nullable=False, index=True)
    event_type  = Column(String(50), nullable=False, default="function_called")
    # JSON payload stored as text so SQLite and Postgres behave the same
    event_data  = Column(Text, nullable=False)
    created_at  = Column(DateTime, default=datetime.utcnow, index=True)


class AgentAction(Base):
    __tablename__ = "agent_actions"

    id            = Column(String(36), primary_key=True)
    user_token    = Column(String(255), nullable=False, index=True)
    site_url      = Column(String(2048), nullable=False)
    action_type   = Column(String(50), nullable=False)
    title         = Column(String(255), nullable=False)
    description   = Column(Text, nullable=True)
    parameters    = Column(Text, nullable=True)       # JSON object as text
    status        = Column(String(50), nullable=False)
    result_data   = Column(Text, nullable=True)       # JSON object as text
    created_at    = Column(DateTime, default=datetime.utcnow, index=True)
    completed_at  = Column(DateTime, nullable=True)


class AgentIdea(Base):
    __tablename__ = "agent_ideas"

    id          = Column(String(36), primary_key=True)
    user_token  = Column(String(255), nullable=False, index=True)
    site_url    = Column(String(2048), nullable=False)
    title       = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    hypothesis  = Column(Text, nullable=True)
    evidence    = Column(Text, nullable=True)         # JSON object as text
    status      = Column(String(50), nullable=False, default="open")
    ice_score   = Column(Integer, nullable=True)
    created_at  = Column(DateTime, default=datetime.utcnow, index=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def init_db(bind: Engine | None = None) -> None:
    """Create all tables. Safe to call on every startup."""
    Base.metadata.create_all(bind=bind or engine)
