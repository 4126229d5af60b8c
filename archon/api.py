"""
FastAPI application for mission control.

REST endpoints for projects, deployments, tasks and the onboarding flows.
Each handler runs one ``db.get_session()`` block, so every request is a
single transaction; lifecycle errors map to their HTTP status codes with a
JSON ``{"error": ...}`` body.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import __version__, db, lifecycle
from .config import settings
from .errors import LifecycleError, NotFoundError, SchemaNotInitializedError, ValidationError
from .logging_setup import configure_logging
from .models import ProjectMode, ProjectStatus
from .repo_analysis import RepoAnalyzer, default_analyzer, parse_github_url
from .schemas import (
    AgentSelectionRequest,
    AnalyzeRepoRequest,
    CreateDeploymentRequest,
    CreateProjectRequest,
    CreateTaskRequest,
    DeployRequest,
    MissionBriefingRequest,
    RepoConnectRequest,
    UpdateAgentRequest,
    UpdateDeploymentRequest,
    UpdateIntegrationRequest,
    UpdateProjectRequest,
    UpdateTaskRequest,
)
from .serializers import (
    serialize_agent,
    serialize_deployment,
    serialize_integration,
    serialize_log,
    serialize_project,
    serialize_task,
)

logger = logging.getLogger(__name__)

PROJECT_LIST_DEPLOYMENTS = 5
DEPLOYMENT_LIST_TASKS = 10

router = APIRouter(prefix="/api")


# ============================================================================
# Helpers
# ============================================================================


async def _deployment_detail(session: AsyncSession, deployment_id: str) -> dict[str, Any]:
    """Deployment with project, tasks (with agent), latest logs, counts and metrics."""
    deployment = await db.get_deployment(session, deployment_id)
    if deployment is None:
        raise NotFoundError("Deployment", deployment_id)

    project = await db.get_project(session, deployment.project_id)
    tasks = await db.get_tasks_for_deployment(session, deployment_id)
    logs = await db.get_logs(session, deployment_id, limit=settings.activity_log_page_size)
    counts = await db.count_children(session, deployment_id)
    metrics = await lifecycle.compute_metrics(session, deployment_id)

    data = serialize_deployment(deployment)
    data["project"] = serialize_project(project) if project else None
    data["tasks"] = [serialize_task(t, include_agent=True) for t in tasks]
    data["logs"] = [serialize_log(log) for log in logs]
    data["counts"] = counts
    return {"deployment": data, "metrics": metrics.to_dict()}


def _require_fields(body: Any, *fields: str) -> None:
    for name in fields:
        value = getattr(body, name)
        if value is None or (isinstance(value, (str, list)) and not value):
            raise ValidationError("Missing required fields", field=name)


# ============================================================================
# Projects
# ============================================================================


@router.get("/projects")
async def list_projects(status: str | None = None) -> dict[str, Any]:
    async with db.get_session() as session:
        projects = await db.list_projects(session, status=status)
        return {
            "projects": [
                serialize_project(p, include_children=True, deployment_limit=PROJECT_LIST_DEPLOYMENTS)
                for p in projects
            ]
        }


@router.post("/projects", status_code=201)
async def create_project(body: CreateProjectRequest) -> dict[str, Any]:
    async with db.get_session() as session:
        project = await lifecycle.create_project(
            session,
            name=body.name,
            mode=body.mode,
            description=body.description,
            tech_stack=body.tech_stack,
            agents=body.agents,
            integrations=body.integrations,
        )
        return {"project": serialize_project(project, include_children=True)}


@router.get("/projects/{project_id}")
async def get_project(project_id: str) -> dict[str, Any]:
    async with db.get_session() as session:
        project = await db.get_project(session, project_id, with_children=True)
        if project is None:
            raise NotFoundError("Project", project_id)
        return {"project": serialize_project(project, include_children=True)}


@router.patch("/projects/{project_id}")
async def update_project(project_id: str, body: UpdateProjectRequest) -> dict[str, Any]:
    async with db.get_session() as session:
        project = await lifecycle.update_project(
            session, project_id, **body.model_dump(exclude_unset=True)
        )
        return {"project": serialize_project(project, include_children=True)}


@router.delete("/projects/{project_id}")
async def delete_project(project_id: str) -> dict[str, Any]:
    async with db.get_session() as session:
        await lifecycle.delete_project(session, project_id)
    return {"success": True}


@router.put("/projects/{project_id}/agents")
async def set_project_agents(project_id: str, body: AgentSelectionRequest) -> dict[str, Any]:
    async with db.get_session() as session:
        agents = await lifecycle.set_agent_selection(session, project_id, body.agent_ids)
        return {"agents": [serialize_agent(a) for a in agents]}


@router.patch("/agents/{agent_id}")
async def update_agent(agent_id: str, body: UpdateAgentRequest) -> dict[str, Any]:
    async with db.get_session() as session:
        agent = await lifecycle.set_agent_status(session, agent_id, body.status)
        return {"agent": serialize_agent(agent)}


@router.patch("/integrations/{integration_id}")
async def update_integration(integration_id: str, body: UpdateIntegrationRequest) -> dict[str, Any]:
    async with db.get_session() as session:
        integration = await lifecycle.set_integration_enabled(session, integration_id, body.enabled)
        return {"integration": serialize_integration(integration)}


# ============================================================================
# Deployments
# ============================================================================


@router.get("/projects/{project_id}/deployments")
async def list_deployments(project_id: str) -> dict[str, Any]:
    async with db.get_session() as session:
        if await db.get_project(session, project_id) is None:
            raise NotFoundError("Project", project_id)

        results = []
        for deployment in await db.list_deployments(session, project_id):
            data = serialize_deployment(deployment)
            tasks = await db.get_tasks_for_deployment(
                session, deployment.id, limit=DEPLOYMENT_LIST_TASKS
            )
            data["tasks"] = [
                {"id": t.id, "title": t.title, "status": t.status, "priority": t.priority}
                for t in tasks
            ]
            data["counts"] = await db.count_children(session, deployment.id)
            results.append(data)
        return {"deployments": results}


@router.post("/projects/{project_id}/deployments", status_code=201)
async def create_deployment(project_id: str, body: CreateDeploymentRequest) -> dict[str, Any]:
    async with db.get_session() as session:
        deployment = await lifecycle.create_deployment(
            session,
            project_id,
            branch=body.branch,
            commit_sha=body.commit_sha,
            environment=body.environment,
        )
        return {"deployment": serialize_deployment(deployment)}


@router.get("/deployments/{deployment_id}")
async def get_deployment(deployment_id: str) -> dict[str, Any]:
    async with db.get_session() as session:
        return await _deployment_detail(session, deployment_id)


@router.patch("/deployments/{deployment_id}")
async def update_deployment(deployment_id: str, body: UpdateDeploymentRequest) -> dict[str, Any]:
    async with db.get_session() as session:
        if body.status is None:
            if body.completed_at is not None:
                raise ValidationError("completedAt can only be set with a status", field="status")
            deployment = await db.get_deployment(session, deployment_id)
            if deployment is None:
                raise NotFoundError("Deployment", deployment_id)
        else:
            deployment = await lifecycle.transition_deployment(
                session, deployment_id, body.status, completed_at=body.completed_at
            )
        data = serialize_deployment(deployment)
        data["counts"] = await db.count_children(session, deployment_id)
        return {"deployment": data}


@router.delete("/deployments/{deployment_id}")
async def delete_deployment(deployment_id: str) -> dict[str, Any]:
    async with db.get_session() as session:
        await lifecycle.delete_deployment(session, deployment_id)
    return {"success": True}


@router.get("/deployments/{deployment_id}/metrics")
async def get_metrics(deployment_id: str) -> dict[str, Any]:
    async with db.get_session() as session:
        metrics = await lifecycle.compute_metrics(session, deployment_id)
        return {"metrics": metrics.to_dict()}


@router.post("/deploy", status_code=201)
async def deploy(body: DeployRequest) -> dict[str, Any]:
    """Onboarding deploy: project, agent team, integrations and first deployment at once."""
    if not body.mode or body.config is None:
        missing = "mode" if not body.mode else "config"
        raise ValidationError("Missing required fields: mode, config", field=missing)

    config = body.config
    async with db.get_session() as session:
        project = await lifecycle.create_project(
            session,
            name=config.project_name,
            mode=body.mode,
            description=config.description,
            tech_stack=config.tech_stack,
            agents=config.agents,
            integrations=config.integrations,
            status=ProjectStatus.INITIALIZING.value,
        )
        deployment = await lifecycle.create_deployment(
            session,
            project.id,
            branch=config.branch,
            commit_sha=config.commit_sha,
            environment=config.environment,
        )
        project = await db.get_project(session, project.id, with_children=True)
        return {
            "success": True,
            "deployment": serialize_deployment(deployment),
            "project": serialize_project(project, include_children=True),
            "message": "Deployment initiated successfully",
            "dashboard_url": f"/mission-control/{deployment.id}",
        }


@router.get("/deploy")
async def get_deploy_status(
    deployment_id: str | None = Query(None, alias="id"),
) -> dict[str, Any]:
    if not deployment_id:
        raise ValidationError("Missing deployment ID", field="id")

    async with db.get_session() as session:
        detail = await _deployment_detail(session, deployment_id)
        project_id = detail["deployment"]["project_id"]
        detail["agents"] = [
            serialize_agent(a) for a in await db.get_agents_for_project(session, project_id)
        ]
        return detail


# ============================================================================
# Tasks
# ============================================================================


@router.post("/deployments/{deployment_id}/tasks", status_code=201)
async def create_task(deployment_id: str, body: CreateTaskRequest) -> dict[str, Any]:
    async with db.get_session() as session:
        task = await lifecycle.create_task(
            session,
            deployment_id,
            title=body.title,
            description=body.description,
            agent_id=body.agent_id,
            priority=body.priority,
            external_url=body.external_url,
        )
        return {"task": serialize_task(task)}


@router.patch("/tasks/{task_id}")
async def update_task(task_id: str, body: UpdateTaskRequest) -> dict[str, Any]:
    async with db.get_session() as session:
        task = await db.get_task(session, task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        if "agent_id" in body.model_fields_set:
            task = await lifecycle.assign_task(session, task_id, body.agent_id)
        if body.status is not None:
            task = await lifecycle.record_task_transition(session, task_id, body.status)
        return {"task": serialize_task(task)}


# ============================================================================
# Onboarding
# ============================================================================


@router.post("/onboarding/mission-briefing", status_code=201)
async def mission_briefing(body: MissionBriefingRequest) -> dict[str, Any]:
    _require_fields(body, "project_name", "project_description", "tech_stack", "features")

    async with db.get_session() as session:
        project = await lifecycle.create_project(
            session,
            name=body.project_name,
            mode=ProjectMode.NEW.value,
            description=body.project_description,
            tech_stack=body.tech_stack,
            status=ProjectStatus.INITIALIZING.value,
            config={
                "features": body.features,
                "timeline": body.timeline,
                "team_size": body.team_size,
                "additional_context": body.additional_context,
            },
        )
        return {
            "success": True,
            "project_id": project.id,
            "message": "Mission briefing received. Archon team is deploying...",
        }


@router.post("/onboarding/repo-connect", status_code=201)
async def repo_connect(body: RepoConnectRequest) -> dict[str, Any]:
    _require_fields(body, "github_url", "access_token", "branch")
    owner, repo = parse_github_url(body.github_url)

    # The access token is only checked for presence; it is never persisted.
    async with db.get_session() as session:
        project = await lifecycle.create_project(
            session,
            name=f"{owner}/{repo}",
            mode=ProjectMode.EXISTING.value,
            description=f"Existing codebase: {body.github_url}",
            status=ProjectStatus.INITIALIZING.value,
            config={
                "github_url": body.github_url,
                "branch": body.branch,
                "owner": owner,
                "repo": repo,
                "analysis": body.analysis if body.analyze_existing else None,
            },
        )
        return {
            "success": True,
            "project_id": project.id,
            "message": "Repository connected. Archon team is integrating...",
        }


@router.post("/onboarding/analyze-repo")
async def analyze_repo(request: Request, body: AnalyzeRepoRequest) -> dict[str, Any]:
    _require_fields(body, "github_url", "access_token", "branch")
    owner, repo = parse_github_url(body.github_url)

    analyzer: RepoAnalyzer = request.app.state.repo_analyzer
    analysis = await analyzer.analyze(
        owner, repo, access_token=body.access_token, branch=body.branch
    )
    return {"owner": owner, "repo": repo, "analysis": analysis.to_dict()}


# ============================================================================
# Error handlers
# ============================================================================


async def lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def schema_error_handler(request: Request, exc: SchemaNotInitializedError) -> JSONResponse:
    logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    field = ".".join(loc) or None
    body: dict[str, Any] = {"error": first.get("msg", "Invalid request")}
    if field:
        body["field"] = field
    return JSONResponse(status_code=400, content=body)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s %s failed", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ============================================================================
# Application
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    if settings.db_auto_create:
        await db.init_db()
        logger.info("Database schema ensured")
    logger.info("Archon mission control API %s starting up", __version__)
    yield
    await db.engine.dispose()
    logger.info("Database engine disposed")


def create_app(repo_analyzer: RepoAnalyzer | None = None) -> FastAPI:
    app = FastAPI(
        title="Archon Mission Control API",
        description="Project, deployment and task lifecycle for agent teams",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.repo_analyzer = repo_analyzer or default_analyzer

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(LifecycleError, lifecycle_error_handler)
    app.add_exception_handler(SchemaNotInitializedError, schema_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        database_connected = True
        try:
            async with db.get_session() as session:
                await session.execute(text("SELECT 1"))
        except (LifecycleError, OSError) as exc:
            logger.warning("Health check could not reach the database: %s", exc)
            database_connected = False
        return {
            "status": "ok" if database_connected else "degraded",
            "database_connected": database_connected,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    app.include_router(router)
    return app


app = create_app()
