"""
Archon Mission Control

Tracks projects, their agent teams, deployments, tasks and activity logs,
with PostgreSQL-backed state, a FastAPI surface and a click CLI.
"""

__version__ = "0.1.0"

# Configuration
from archon.config import Settings

# Errors
from archon.errors import (
    ConflictError,
    LifecycleError,
    NotFoundError,
    StorageError,
    ValidationError,
)

# Lifecycle
from archon.lifecycle import Metrics

# Core models
from archon.models import (
    ActivityLog,
    Agent,
    AgentStatus,
    AgentType,
    Deployment,
    DeploymentStatus,
    Integration,
    Project,
    ProjectMode,
    ProjectStatus,
    Task,
    TaskStatus,
)

# Repository analysis
from archon.repo_analysis import RepoAnalysis, StaticRepoAnalyzer

__all__ = [
    # Version
    "__version__",
    # Models
    "Project",
    "Agent",
    "Integration",
    "Deployment",
    "Task",
    "ActivityLog",
    "ProjectMode",
    "ProjectStatus",
    "AgentType",
    "AgentStatus",
    "DeploymentStatus",
    "TaskStatus",
    # Config
    "Settings",
    # Errors
    "LifecycleError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "StorageError",
    # Lifecycle
    "Metrics",
    # Repo analysis
    "RepoAnalysis",
    "StaticRepoAnalyzer",
]
