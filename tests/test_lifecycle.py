from datetime import timedelta
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from archon import db, lifecycle
from archon.errors import NotFoundError, ValidationError
from archon.models import ActivityLog, Agent, Deployment, Integration, Project, Task


async def _count(model, *criteria) -> int:
    async with db.get_session() as session:
        result = await session.execute(select(func.count()).select_from(model).where(*criteria))
        return result.scalar_one()


async def _logs(deployment_id: str) -> list[ActivityLog]:
    async with db.get_session() as session:
        return await db.get_logs(session, deployment_id)


@pytest_asyncio.fixture
async def project(database: None) -> Project:
    async with db.get_session() as session:
        return await lifecycle.create_project(
            session,
            name="demo",
            mode="new",
            agents={"frontend": True, "backend": True},
        )


@pytest_asyncio.fixture
async def deployment(project: Project) -> Deployment:
    async with db.get_session() as session:
        return await lifecycle.create_deployment(session, project.id, branch="main")


def _agent(project: Project, agent_type: str) -> Agent:
    return next(a for a in project.agents if a.type == agent_type)


# =============================================================================
# Projects
# =============================================================================


@pytest.mark.asyncio
async def test_create_project_with_agent_team(project: Project) -> None:
    assert await _count(Project) == 1
    async with db.get_session() as session:
        agents = await db.get_agents_for_project(session, project.id)

    assert sorted(a.type for a in agents) == ["backend", "frontend"]
    assert all(a.status == "idle" for a in agents)
    assert all(a.tasks_active == 0 and a.tasks_completed == 0 for a in agents)
    assert _agent(project, "frontend").name == "Frontend Engineer"


@pytest.mark.asyncio
async def test_agent_count_matches_truthy_selection(database: None) -> None:
    async with db.get_session() as session:
        project = await lifecycle.create_project(
            session,
            name="legacy",
            mode="existing",
            agents={"frontend": True, "backend": False, "qa": 1, "docs": 0},
        )

    async with db.get_session() as session:
        stored = await db.get_project(session, project.id, with_children=True)

    assert stored.mode == "existing"
    assert sorted(a.type for a in stored.agents) == ["frontend", "qa"]


@pytest.mark.asyncio
async def test_only_enabled_integrations_are_created(database: None) -> None:
    async with db.get_session() as session:
        project = await lifecycle.create_project(
            session,
            name="demo",
            mode="new",
            integrations={
                "github": {"enabled": True, "token": "ghp_secret"},
                "slack": {"enabled": False, "webhook": "https://hooks.example"},
            },
        )

    assert [i.type for i in project.integrations] == ["github"]
    github = project.integrations[0]
    assert github.status == "connected"
    assert github.enabled is True
    assert github.config == {"token": "ghp_secret"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("agents", "integrations"),
    [
        (None, None),
        ({"qa": True}, None),
        (None, {"github": {"enabled": True}}),
        ({"frontend": False}, {"slack": {"enabled": False}}),
    ],
)
async def test_create_project_with_empty_selections(
    database: None, agents: dict | None, integrations: dict | None
) -> None:
    async with db.get_session() as session:
        project = await lifecycle.create_project(
            session, name="bare", mode="new", agents=agents, integrations=integrations
        )
        expected_agents = [t for t, on in (agents or {}).items() if on]
        expected_integrations = [t for t, c in (integrations or {}).items() if c["enabled"]]
        assert [a.type for a in project.agents] == expected_agents
        assert [i.type for i in project.integrations] == expected_integrations
        assert project.deployments == []

    assert await _count(Agent) == len(expected_agents)
    assert await _count(Integration) == len(expected_integrations)


@pytest.mark.asyncio
async def test_update_project_without_children(database: None) -> None:
    async with db.get_session() as session:
        project = await lifecycle.create_project(session, name="bare", mode="new")
    async with db.get_session() as session:
        updated = await lifecycle.update_project(session, project.id, name="renamed")
        assert updated.name == "renamed"
        assert updated.agents == []
        assert updated.integrations == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("kwargs", "field"),
    [
        ({"name": "", "mode": "new"}, "name"),
        ({"name": "   ", "mode": "new"}, "name"),
        ({"name": "demo", "mode": None}, "mode"),
        ({"name": "demo", "mode": "greenfield"}, "mode"),
        ({"name": "demo", "mode": ["new"]}, "mode"),
        ({"name": "demo", "mode": 1}, "mode"),
        ({"name": "demo", "mode": "new", "agents": {"designer": True}}, "agents"),
        ({"name": "demo", "mode": "new", "integrations": {"github": True}}, "integrations"),
    ],
)
async def test_create_project_validation(database: None, kwargs: dict, field: str) -> None:
    with pytest.raises(ValidationError) as exc_info:
        async with db.get_session() as session:
            await lifecycle.create_project(session, **kwargs)

    assert exc_info.value.field == field
    assert await _count(Project) == 0


@pytest.mark.asyncio
async def test_update_project(project: Project) -> None:
    async with db.get_session() as session:
        updated = await lifecycle.update_project(
            session, project.id, description="Now with docs", status="archived"
        )

    assert updated.description == "Now with docs"
    assert updated.status == "archived"
    assert updated.name == "demo"


@pytest.mark.asyncio
async def test_update_project_rejects_bad_input(project: Project) -> None:
    with pytest.raises(ValidationError):
        async with db.get_session() as session:
            await lifecycle.update_project(session, project.id, status="paused")

    with pytest.raises(ValidationError):
        async with db.get_session() as session:
            await lifecycle.update_project(session, project.id, mode="existing")

    with pytest.raises(NotFoundError):
        async with db.get_session() as session:
            await lifecycle.update_project(session, str(uuid4()), name="other")


@pytest.mark.asyncio
async def test_delete_project_cascades(project: Project, deployment: Deployment) -> None:
    async with db.get_session() as session:
        await lifecycle.create_task(
            session, deployment.id, title="Ship it", agent_id=_agent(project, "backend").id
        )
    async with db.get_session() as session:
        await lifecycle.transition_deployment(session, deployment.id, "active")

    async with db.get_session() as session:
        await lifecycle.delete_project(session, project.id)

    for model in (Project, Agent, Integration, Deployment, Task, ActivityLog):
        assert await _count(model) == 0

    with pytest.raises(NotFoundError):
        async with db.get_session() as session:
            await lifecycle.delete_project(session, project.id)


@pytest.mark.asyncio
async def test_failed_operation_is_all_or_nothing(database: None) -> None:
    with pytest.raises(ValidationError):
        async with db.get_session() as session:
            project = await lifecycle.create_project(
                session, name="demo", mode="new", agents={"qa": True}
            )
            deployment = await lifecycle.create_deployment(session, project.id)
            await lifecycle.create_task(session, deployment.id, title="Bad", priority=9)

    for model in (Project, Agent, Deployment, ActivityLog, Task):
        assert await _count(model) == 0


# =============================================================================
# Agents / Integrations
# =============================================================================


@pytest.mark.asyncio
async def test_agent_selection_toggles_without_recreating(project: Project) -> None:
    frontend = _agent(project, "frontend")
    backend = _agent(project, "backend")

    async with db.get_session() as session:
        agents = await lifecycle.set_agent_selection(session, project.id, [frontend.id])
    statuses = {a.id: a.status for a in agents}
    assert statuses == {frontend.id: "idle", backend.id: "offline"}

    async with db.get_session() as session:
        agents = await lifecycle.set_agent_selection(session, project.id, [frontend.id, backend.id])
    assert {a.id: a.status for a in agents} == {frontend.id: "idle", backend.id: "idle"}
    assert await _count(Agent) == 2


@pytest.mark.asyncio
async def test_agent_selection_rejects_foreign_agents(project: Project) -> None:
    async with db.get_session() as session:
        other = await lifecycle.create_project(
            session, name="other", mode="new", agents={"qa": True}
        )

    with pytest.raises(ValidationError) as exc_info:
        async with db.get_session() as session:
            await lifecycle.set_agent_selection(session, project.id, [other.agents[0].id])
    assert exc_info.value.field == "agent_ids"


@pytest.mark.asyncio
async def test_set_agent_status(project: Project) -> None:
    frontend = _agent(project, "frontend")
    assert frontend.last_active_at is None

    async with db.get_session() as session:
        agent = await lifecycle.set_agent_status(session, frontend.id, "busy")
    assert agent.status == "busy"
    assert agent.last_active_at is not None

    with pytest.raises(ValidationError):
        async with db.get_session() as session:
            await lifecycle.set_agent_status(session, frontend.id, "sleeping")

    with pytest.raises(NotFoundError):
        async with db.get_session() as session:
            await lifecycle.set_agent_status(session, str(uuid4()), "idle")


@pytest.mark.asyncio
async def test_set_integration_enabled(database: None) -> None:
    async with db.get_session() as session:
        project = await lifecycle.create_project(
            session, name="demo", mode="new", integrations={"linear": {"enabled": True}}
        )
    integration_id = project.integrations[0].id

    async with db.get_session() as session:
        integration = await lifecycle.set_integration_enabled(session, integration_id, False)
    assert integration.enabled is False
    assert integration.status == "disconnected"

    async with db.get_session() as session:
        integration = await lifecycle.set_integration_enabled(session, integration_id, True)
    assert integration.status == "connected"


# =============================================================================
# Deployments
# =============================================================================


@pytest.mark.asyncio
async def test_create_deployment_initializes_with_one_log(deployment: Deployment) -> None:
    assert deployment.status == "initializing"
    assert deployment.environment == "production"
    assert deployment.started_at is not None
    assert deployment.completed_at is None
    assert deployment.duration is None

    logs = await _logs(deployment.id)
    assert len(logs) == 1
    assert logs[0].level == "info"
    assert logs[0].message == f"Deployment {deployment.id} initialized for production"
    assert logs[0].metadata_ == {"branch": "main", "commit_sha": None}


@pytest.mark.asyncio
async def test_create_deployment_for_missing_project(database: None) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        async with db.get_session() as session:
            await lifecycle.create_deployment(session, str(uuid4()))
    assert exc_info.value.message == "Project not found"
    assert await _count(Deployment) == 0


@pytest.mark.asyncio
async def test_transition_to_failed_sets_completion(deployment: Deployment) -> None:
    async with db.get_session() as session:
        failed = await lifecycle.transition_deployment(session, deployment.id, "failed")

    assert failed.status == "failed"
    assert failed.completed_at is not None
    assert failed.duration is not None and failed.duration >= 0

    logs = await _logs(deployment.id)
    assert len(logs) == 2
    assert [log.level for log in logs].count("error") == 1
    error_log = next(log for log in logs if log.level == "error")
    assert error_log.message == "Deployment status changed from initializing to failed"


@pytest.mark.asyncio
async def test_repeated_same_status_logs_once(deployment: Deployment) -> None:
    for _ in range(3):
        async with db.get_session() as session:
            await lifecycle.transition_deployment(session, deployment.id, "active")

    logs = await _logs(deployment.id)
    assert len(logs) == 2
    assert all(log.level == "info" for log in logs)


@pytest.mark.asyncio
async def test_transition_rereads_status_committed_elsewhere(deployment: Deployment) -> None:
    async with db.get_session() as session:
        stale = await db.get_deployment(session, deployment.id)
        assert stale.status == "initializing"

        async with db.get_session() as other:
            await lifecycle.transition_deployment(other, deployment.id, "active")

        current = await lifecycle.transition_deployment(session, deployment.id, "active")
        assert current.status == "active"

    logs = await _logs(deployment.id)
    assert len(logs) == 2


@pytest.mark.asyncio
async def test_duration_is_floored_and_never_negative(project: Project) -> None:
    async with db.get_session() as session:
        first = await lifecycle.create_deployment(session, project.id)
        second = await lifecycle.create_deployment(session, project.id)

    async with db.get_session() as session:
        done = await lifecycle.transition_deployment(
            session,
            first.id,
            "completed",
            completed_at=first.started_at + timedelta(seconds=90, milliseconds=700),
        )
        early = await lifecycle.transition_deployment(
            session,
            second.id,
            "completed",
            completed_at=second.started_at - timedelta(seconds=5),
        )

    assert done.duration == 90
    assert early.duration == 0


@pytest.mark.asyncio
async def test_completed_at_tracks_terminal_status(deployment: Deployment) -> None:
    async with db.get_session() as session:
        completed = await lifecycle.transition_deployment(session, deployment.id, "completed")
        stamped = completed.completed_at
        duration = completed.duration

    async with db.get_session() as session:
        failed = await lifecycle.transition_deployment(session, deployment.id, "failed")
    assert failed.completed_at is not None
    assert failed.duration == duration
    assert failed.completed_at.replace(tzinfo=None) == stamped.replace(tzinfo=None)

    async with db.get_session() as session:
        reopened = await lifecycle.transition_deployment(session, deployment.id, "active")
    assert reopened.completed_at is None
    assert reopened.duration is None


@pytest.mark.asyncio
async def test_transition_rejects_unknown_status(deployment: Deployment) -> None:
    with pytest.raises(ValidationError) as exc_info:
        async with db.get_session() as session:
            await lifecycle.transition_deployment(session, deployment.id, "paused")
    assert exc_info.value.field == "status"

    async with db.get_session() as session:
        stored = await db.get_deployment(session, deployment.id)
    assert stored.status == "initializing"
    assert len(await _logs(deployment.id)) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("missing_id", [str(uuid4()), "nonexistent"])
async def test_missing_deployment_raises_not_found(database: None, missing_id: str) -> None:
    with pytest.raises(NotFoundError):
        async with db.get_session() as session:
            await lifecycle.transition_deployment(session, missing_id, "active")
    with pytest.raises(NotFoundError):
        async with db.get_session() as session:
            await lifecycle.delete_deployment(session, missing_id)
    with pytest.raises(NotFoundError):
        async with db.get_session() as session:
            await lifecycle.create_task(session, missing_id, title="Orphan")


@pytest.mark.asyncio
async def test_delete_deployment_recounts_agents(project: Project, deployment: Deployment) -> None:
    backend = _agent(project, "backend")
    async with db.get_session() as session:
        task = await lifecycle.create_task(
            session, deployment.id, title="Migrate", agent_id=backend.id
        )
    async with db.get_session() as session:
        await lifecycle.record_task_transition(session, task.id, "in_progress")

    async with db.get_session() as session:
        await lifecycle.delete_deployment(session, deployment.id)

    assert await _count(Task) == 0
    assert await _count(ActivityLog) == 0
    async with db.get_session() as session:
        agent = await db.get_agent(session, backend.id)
    assert agent.tasks_active == 0


# =============================================================================
# Tasks
# =============================================================================


@pytest.mark.asyncio
async def test_task_transitions_drive_agent_counters(project: Project, deployment: Deployment) -> None:
    backend = _agent(project, "backend")
    async with db.get_session() as session:
        task = await lifecycle.create_task(
            session, deployment.id, title="Build API", agent_id=backend.id, priority=2
        )
    assert task.status == "pending"
    assert task.started_at is None

    async with db.get_session() as session:
        task = await lifecycle.record_task_transition(session, task.id, "in_progress")
        agent = await db.get_agent(session, backend.id)
        assert agent.tasks_active == 1
        assert agent.tasks_completed == 0
        assert agent.last_active_at is not None
    started_at = task.started_at
    assert started_at is not None

    async with db.get_session() as session:
        task = await lifecycle.record_task_transition(session, task.id, "completed")
        agent = await db.get_agent(session, backend.id)
        assert agent.tasks_active == 0
        assert agent.tasks_completed == 1
    completed_at = task.completed_at
    assert completed_at >= started_at

    # Reopening never clears or moves the stamps.
    async with db.get_session() as session:
        task = await lifecycle.record_task_transition(session, task.id, "in_progress")
    async with db.get_session() as session:
        stored = await db.get_task(session, task.id)
        agent = await db.get_agent(session, backend.id)
    assert stored.started_at.replace(tzinfo=None) == started_at.replace(tzinfo=None)
    assert stored.completed_at.replace(tzinfo=None) == completed_at.replace(tzinfo=None)
    assert agent.tasks_active == 1
    assert agent.tasks_completed == 0


@pytest.mark.asyncio
async def test_concurrent_task_transition_applies_once(
    project: Project, deployment: Deployment, monkeypatch: pytest.MonkeyPatch
) -> None:
    backend = _agent(project, "backend")
    async with db.get_session() as session:
        task = await lifecycle.create_task(
            session, deployment.id, title="Race", agent_id=backend.id
        )

    original_get_agent = db.get_agent
    rival_results: list[Task] = []
    rival_started = False

    async def get_agent_after_rival_commit(*args, **kwargs):
        nonlocal rival_started
        # Another request finishes the same transition between our read and our lock.
        if not rival_started:
            rival_started = True
            async with db.get_session() as other:
                rival_results.append(
                    await lifecycle.record_task_transition(other, task.id, "in_progress")
                )
        return await original_get_agent(*args, **kwargs)

    monkeypatch.setattr(db, "get_agent", get_agent_after_rival_commit)

    async with db.get_session() as session:
        result = await lifecycle.record_task_transition(session, task.id, "in_progress")
        assert result.status == "in_progress"
    monkeypatch.undo()

    moves = [
        log
        for log in await _logs(deployment.id)
        if log.type == "task" and (log.metadata_ or {}).get("new_status") == "in_progress"
    ]
    assert len(moves) == 1

    async with db.get_session() as session:
        stored = await db.get_task(session, task.id)
        agent = await db.get_agent(session, backend.id)
    rival_stamp = rival_results[0].started_at
    assert stored.started_at.replace(tzinfo=None) == rival_stamp.replace(tzinfo=None)
    assert agent.tasks_active == 1


@pytest.mark.asyncio
async def test_task_transition_logs(deployment: Deployment) -> None:
    async with db.get_session() as session:
        task = await lifecycle.create_task(session, deployment.id, title="Flaky test")
    async with db.get_session() as session:
        await lifecycle.record_task_transition(session, task.id, "failed")
    async with db.get_session() as session:
        await lifecycle.record_task_transition(session, task.id, "failed")

    task_logs = [log for log in await _logs(deployment.id) if log.type == "task"]
    assert len(task_logs) == 2
    assert sorted(log.level for log in task_logs) == ["error", "info"]


@pytest.mark.asyncio
async def test_task_validation(project: Project, deployment: Deployment) -> None:
    with pytest.raises(ValidationError) as exc_info:
        async with db.get_session() as session:
            await lifecycle.create_task(session, deployment.id, title="")
    assert exc_info.value.field == "title"

    with pytest.raises(ValidationError) as exc_info:
        async with db.get_session() as session:
            await lifecycle.create_task(session, deployment.id, title="Later", priority=5)
    assert exc_info.value.field == "priority"

    async with db.get_session() as session:
        task = await lifecycle.create_task(session, deployment.id, title="Valid")
    with pytest.raises(ValidationError):
        async with db.get_session() as session:
            await lifecycle.record_task_transition(session, task.id, "done")

    with pytest.raises(NotFoundError):
        async with db.get_session() as session:
            await lifecycle.record_task_transition(session, str(uuid4()), "completed")


@pytest.mark.asyncio
async def test_task_without_deployment_raises_not_found(
    project: Project, deployment: Deployment, monkeypatch: pytest.MonkeyPatch
) -> None:
    backend = _agent(project, "backend")
    async with db.get_session() as session:
        task = await lifecycle.create_task(session, deployment.id, title="Orphan")

    async def no_deployment(*args, **kwargs):
        return None

    monkeypatch.setattr(db, "get_deployment", no_deployment)
    with pytest.raises(NotFoundError) as exc_info:
        async with db.get_session() as session:
            await lifecycle.record_task_transition(session, task.id, "completed")
    assert exc_info.value.entity == "Deployment"
    assert exc_info.value.entity_id == deployment.id

    with pytest.raises(NotFoundError) as exc_info:
        async with db.get_session() as session:
            await lifecycle.assign_task(session, task.id, backend.id)
    assert exc_info.value.entity == "Deployment"
    monkeypatch.undo()

    async with db.get_session() as session:
        stored = await db.get_task(session, task.id)
    assert stored.status == "pending"
    assert stored.agent_id is None


@pytest.mark.asyncio
async def test_task_agent_must_share_project(deployment: Deployment) -> None:
    async with db.get_session() as session:
        other = await lifecycle.create_project(
            session, name="other", mode="new", agents={"qa": True}
        )

    with pytest.raises(ValidationError) as exc_info:
        async with db.get_session() as session:
            await lifecycle.create_task(
                session, deployment.id, title="Cross", agent_id=other.agents[0].id
            )
    assert exc_info.value.field == "agent_id"
    assert await _count(Task) == 0


@pytest.mark.asyncio
async def test_assign_task_moves_counters(project: Project, deployment: Deployment) -> None:
    frontend = _agent(project, "frontend")
    backend = _agent(project, "backend")
    async with db.get_session() as session:
        task = await lifecycle.create_task(
            session, deployment.id, title="Shared", agent_id=frontend.id
        )
    async with db.get_session() as session:
        await lifecycle.record_task_transition(session, task.id, "in_progress")

    async with db.get_session() as session:
        await lifecycle.assign_task(session, task.id, backend.id)

    async with db.get_session() as session:
        old = await db.get_agent(session, frontend.id)
        new = await db.get_agent(session, backend.id)
    assert old.tasks_active == 0
    assert new.tasks_active == 1

    async with db.get_session() as session:
        unassigned = await lifecycle.assign_task(session, task.id, None)
        new = await db.get_agent(session, backend.id)
    assert unassigned.agent_id is None
    assert new.tasks_active == 0
