"""Async database connection and query helpers for mission control."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import event, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import selectinload
from sqlalchemy.pool import NullPool

from .config import settings
from .errors import (
    ConflictError,
    SchemaNotInitializedError,
    StorageError,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .events import event_bus, take_pending_events
from .models import ActivityLog, Agent, Base, Deployment, Integration, Project, Task

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine; SQLite gets foreign key enforcement for cascades."""
    if url.startswith("sqlite"):
        new_engine = create_async_engine(url, echo=echo, poolclass=NullPool)
        event.listen(new_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        return new_engine
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


# Create async engine and session factory
engine = build_engine(settings.async_database_url, echo=settings.db_echo)
async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


def configure_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Rebind the module engine and session factory to another database."""
    global engine, async_session_factory
    engine = build_engine(url, echo=echo)
    async_session_factory = async_sessionmaker(engine, expire_on_commit=False)
    return engine


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Async context manager for one transactional unit of work.

    Commits on clean exit and rolls back on any exception. Driver errors are
    logged with full detail and re-raised as generic lifecycle errors.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            take_pending_events(session)
            if not isinstance(exc, SQLAlchemyError):
                raise
            if is_schema_missing_error(exc):
                raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
            logger.error("Database operation failed: %s", exc, exc_info=True)
            if isinstance(exc, IntegrityError):
                raise ConflictError("Request conflicts with existing data") from exc
            raise StorageError() from exc

        for pending in take_pending_events(session):
            await event_bus.emit(pending)


# =============================================================================
# Project Queries
# =============================================================================


async def get_project(
    session: AsyncSession, project_id: str, *, with_children: bool = False
) -> Project | None:
    """Get a project by ID, optionally with agents, integrations and deployments."""
    if not _is_uuid(project_id):
        return None
    query = select(Project).where(Project.id == project_id)
    if with_children:
        query = query.options(
            selectinload(Project.agents),
            selectinload(Project.integrations),
            selectinload(Project.deployments),
        ).execution_options(populate_existing=True)
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def list_projects(session: AsyncSession, status: str | None = None) -> list[Project]:
    """List projects newest first, with agents and deployments loaded."""
    query = (
        select(Project)
        .options(selectinload(Project.agents), selectinload(Project.deployments))
        .order_by(Project.created_at.desc())
    )
    if status:
        query = query.where(Project.status == status)
    result = await session.execute(query)
    return list(result.scalars().all())


# =============================================================================
# Agent / Integration Queries
# =============================================================================


async def get_agent(session: AsyncSession, agent_id: str, *, for_update: bool = False) -> Agent | None:
    if not _is_uuid(agent_id):
        return None
    query = select(Agent).where(Agent.id == agent_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def get_agents_for_project(session: AsyncSession, project_id: str) -> list[Agent]:
    result = await session.execute(
        select(Agent).where(Agent.project_id == project_id).order_by(Agent.created_at)
    )
    return list(result.scalars().all())


async def get_integration(session: AsyncSession, integration_id: str) -> Integration | None:
    if not _is_uuid(integration_id):
        return None
    result = await session.execute(select(Integration).where(Integration.id == integration_id))
    return result.scalar_one_or_none()


# =============================================================================
# Deployment Queries
# =============================================================================


async def get_deployment(
    session: AsyncSession, deployment_id: str, *, for_update: bool = False
) -> Deployment | None:
    """Get a deployment by ID."""
    if not _is_uuid(deployment_id):
        return None
    query = select(Deployment).where(Deployment.id == deployment_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def list_deployments(session: AsyncSession, project_id: str) -> list[Deployment]:
    result = await session.execute(
        select(Deployment)
        .where(Deployment.project_id == project_id)
        .order_by(Deployment.created_at.desc())
    )
    return list(result.scalars().all())


async def count_deployments_started_since(
    session: AsyncSession, project_id: str, since: datetime
) -> int:
    result = await session.execute(
        select(func.count(Deployment.id)).where(
            Deployment.project_id == project_id, Deployment.started_at >= since
        )
    )
    return int(result.scalar_one())


async def count_children(session: AsyncSession, deployment_id: str) -> dict[str, int]:
    """Return task and log counts for a deployment."""
    tasks = await session.execute(
        select(func.count(Task.id)).where(Task.deployment_id == deployment_id)
    )
    logs = await session.execute(
        select(func.count(ActivityLog.id)).where(ActivityLog.deployment_id == deployment_id)
    )
    return {"tasks": int(tasks.scalar_one()), "logs": int(logs.scalar_one())}


# =============================================================================
# Task Queries
# =============================================================================


async def get_task(session: AsyncSession, task_id: str, *, for_update: bool = False) -> Task | None:
    if not _is_uuid(task_id):
        return None
    query = select(Task).where(Task.id == task_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def get_tasks_for_deployment(
    session: AsyncSession, deployment_id: str, *, limit: int | None = None
) -> list[Task]:
    """Get tasks for a deployment, newest first, with their agent loaded."""
    query = (
        select(Task)
        .options(selectinload(Task.agent))
        .where(Task.deployment_id == deployment_id)
        .order_by(Task.created_at.desc())
    )
    if limit is not None:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def count_tasks_by_status(
    session: AsyncSession,
    *,
    deployment_id: str | None = None,
    agent_id: str | None = None,
) -> dict[str, int]:
    """Count tasks grouped by status for a deployment or an agent."""
    query = select(Task.status, func.count(Task.id)).group_by(Task.status)
    if deployment_id is not None:
        query = query.where(Task.deployment_id == deployment_id)
    if agent_id is not None:
        query = query.where(Task.agent_id == agent_id)
    result = await session.execute(query)
    return {status: int(count) for status, count in result.all()}


# =============================================================================
# Activity Log Queries
# =============================================================================


async def get_logs(
    session: AsyncSession, deployment_id: str, *, limit: int | None = None
) -> list[ActivityLog]:
    """Get activity logs for a deployment, newest first."""
    query = (
        select(ActivityLog)
        .where(ActivityLog.deployment_id == deployment_id)
        .order_by(ActivityLog.created_at.desc())
    )
    if limit is not None:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


def _is_uuid(value: str | None) -> bool:
    try:
        UUID(str(value))
    except ValueError:
        return False
    return True


def start_of_utc_day(now: datetime | None = None) -> datetime:
    now = now or datetime.now(UTC)
    return now.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
