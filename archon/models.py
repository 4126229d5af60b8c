"""SQLAlchemy models for the mission control database."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(UTC)


def _uuid_pk() -> Mapped[str]:
    return mapped_column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid4()))


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
        list[str]: JSONType,
    }


# =============================================================================
# STATUS VOCABULARIES
# =============================================================================


class ProjectMode(str, Enum):
    NEW = "new"
    EXISTING = "existing"


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    INITIALIZING = "initializing"
    ARCHIVED = "archived"
    COMPLETED = "completed"


class AgentType(str, Enum):
    FRONTEND = "frontend"
    BACKEND = "backend"
    DATABASE = "database"
    DEVOPS = "devops"
    QA = "qa"
    DOCS = "docs"
    TECHLEAD = "techlead"


AGENT_DISPLAY_NAMES: dict[str, str] = {
    AgentType.FRONTEND.value: "Frontend Engineer",
    AgentType.BACKEND.value: "Backend Engineer",
    AgentType.DATABASE.value: "Database Specialist",
    AgentType.DEVOPS.value: "DevOps Engineer",
    AgentType.QA.value: "QA Engineer",
    AgentType.DOCS.value: "Documentation Writer",
    AgentType.TECHLEAD.value: "Tech Lead",
}


class AgentStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    BUSY = "busy"
    ERROR = "error"
    OFFLINE = "offline"


class IntegrationStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class DeploymentStatus(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_DEPLOYMENT_STATUSES = frozenset(
    {DeploymentStatus.COMPLETED.value, DeploymentStatus.FAILED.value}
)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED.value, TaskStatus.FAILED.value})


class TaskPriority(int, Enum):
    URGENT = 1
    HIGH = 2
    NORMAL = 3
    LOW = 4


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# =============================================================================
# PROJECT-SCOPED TABLES
# =============================================================================


class Project(Base):
    """Top-level unit of work created by onboarding or a deploy request."""

    __tablename__ = "projects"

    id: Mapped[str] = _uuid_pk()
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    mode: Mapped[str] = mapped_column(String, nullable=False)
    tech_stack: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    config: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String, default=ProjectStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    # Relationships
    agents: Mapped[list[Agent]] = relationship(
        back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )
    integrations: Mapped[list[Integration]] = relationship(
        back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )
    deployments: Mapped[list[Deployment]] = relationship(
        back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )


class Agent(Base):
    """A named role record tracked for status and task-count display."""

    __tablename__ = "agents"

    id: Mapped[str] = _uuid_pk()
    project_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default=AgentStatus.IDLE.value)
    tasks_active: Mapped[int] = mapped_column(Integer, default=0)
    tasks_completed: Mapped[int] = mapped_column(Integer, default=0)
    last_active_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (Index("idx_agents_project", "project_id"),)

    project: Mapped[Project] = relationship(back_populates="agents")
    tasks: Mapped[list[Task]] = relationship(back_populates="agent", passive_deletes=True)


class Integration(Base):
    """External connector settings (GitHub, Linear, Slack, ...)."""

    __tablename__ = "integrations"

    id: Mapped[str] = _uuid_pk()
    project_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    # Sensitive: tokens and webhooks. Never serialized back in plaintext.
    config: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    status: Mapped[str] = mapped_column(String, default=IntegrationStatus.CONNECTED.value)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (Index("idx_integrations_project", "project_id"),)

    project: Mapped[Project] = relationship(back_populates="integrations")


# =============================================================================
# DEPLOYMENT-SCOPED TABLES
# =============================================================================


class Deployment(Base):
    """One lifecycle run of a project in a given environment."""

    __tablename__ = "deployments"

    id: Mapped[str] = _uuid_pk()
    project_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String, default=DeploymentStatus.INITIALIZING.value)
    environment: Mapped[str] = mapped_column(String, default="production")
    branch: Mapped[str | None] = mapped_column(String, nullable=True)
    commit_sha: Mapped[str | None] = mapped_column(String, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)  # seconds
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_deployments_project", "project_id"),
        Index("idx_deployments_status", "status"),
    )

    project: Mapped[Project] = relationship(back_populates="deployments")
    tasks: Mapped[list[Task]] = relationship(
        back_populates="deployment", cascade="all, delete-orphan", passive_deletes=True
    )
    logs: Mapped[list[ActivityLog]] = relationship(
        back_populates="deployment", cascade="all, delete-orphan", passive_deletes=True
    )


class Task(Base):
    """A unit of work attributed to a deployment and optionally an agent."""

    __tablename__ = "tasks"

    id: Mapped[str] = _uuid_pk()
    deployment_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("deployments.id", ondelete="CASCADE"), nullable=False
    )
    agent_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("agents.id", ondelete="SET NULL"), nullable=True
    )
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default=TaskStatus.PENDING.value)
    priority: Mapped[int] = mapped_column(Integer, default=TaskPriority.NORMAL.value)
    external_url: Mapped[str | None] = mapped_column(String, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    __table_args__ = (
        Index("idx_tasks_deployment", "deployment_id"),
        Index("idx_tasks_agent_status", "agent_id", "status"),
    )

    deployment: Mapped[Deployment] = relationship(back_populates="tasks")
    agent: Mapped[Agent | None] = relationship(back_populates="tasks")


class ActivityLog(Base):
    """Immutable audit entry tied to a deployment."""

    __tablename__ = "activity_logs"

    id: Mapped[str] = _uuid_pk()
    deployment_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("deployments.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String, default="deployment")
    level: Mapped[str] = mapped_column(String, default=LogLevel.INFO.value)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (Index("idx_activity_logs_deployment", "deployment_id", "created_at"),)

    deployment: Mapped[Deployment] = relationship(back_populates="logs")
