"""Pydantic request models for the HTTP API.

Required domain fields are optional here on purpose: the lifecycle layer owns
the field-level validation and its error messages. Both snake_case and the
camelCase names the dashboard sends are accepted.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Projects ─────────────────────────────────────────────────────────────


class CreateProjectRequest(RequestModel):
    name: Optional[str] = None
    description: Optional[str] = None
    mode: Optional[str] = None
    tech_stack: Optional[list[str]] = None
    agents: dict[str, bool] = {}
    integrations: dict[str, dict[str, Any]] = {}


class UpdateProjectRequest(RequestModel):
    name: Optional[str] = None
    description: Optional[str] = None
    tech_stack: Optional[list[str]] = None
    status: Optional[str] = None


class AgentSelectionRequest(RequestModel):
    agent_ids: list[str] = []


class UpdateAgentRequest(RequestModel):
    status: str


class UpdateIntegrationRequest(RequestModel):
    enabled: bool


# ── Deployments ──────────────────────────────────────────────────────────


class CreateDeploymentRequest(RequestModel):
    branch: Optional[str] = None
    commit_sha: Optional[str] = None
    environment: str = "production"


class UpdateDeploymentRequest(RequestModel):
    status: Optional[str] = None
    completed_at: Optional[datetime] = None


class DeployConfig(RequestModel):
    project_name: Optional[str] = None
    description: Optional[str] = None
    tech_stack: Optional[list[str]] = None
    agents: dict[str, bool] = {}
    integrations: dict[str, dict[str, Any]] = {}
    environment: str = "production"
    branch: Optional[str] = None
    commit_sha: Optional[str] = None


class DeployRequest(RequestModel):
    mode: Optional[str] = None
    config: Optional[DeployConfig] = None


# ── Tasks ────────────────────────────────────────────────────────────────


class CreateTaskRequest(RequestModel):
    title: Optional[str] = None
    description: Optional[str] = None
    agent_id: Optional[str] = None
    priority: int = 3
    external_url: Optional[str] = None


class UpdateTaskRequest(RequestModel):
    status: Optional[str] = None
    agent_id: Optional[str] = None


# ── Onboarding ───────────────────────────────────────────────────────────


class MissionBriefingRequest(RequestModel):
    project_name: Optional[str] = None
    project_description: Optional[str] = None
    tech_stack: Optional[list[str]] = None
    features: Optional[list[str]] = None
    timeline: Optional[str] = None
    team_size: Optional[str] = None
    additional_context: Optional[str] = None


class AnalyzeRepoRequest(RequestModel):
    github_url: Optional[str] = None
    access_token: Optional[str] = None
    branch: Optional[str] = None


class RepoConnectRequest(AnalyzeRepoRequest):
    analyze_existing: bool = False
    analysis: Optional[dict[str, Any]] = None
