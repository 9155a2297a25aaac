"""
Session API Routes
==================

REST endpoints for resolution sessions, their issues, checkpoints and
metrics. Engine errors propagate to the exception handlers in ``main``.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Query, status

from fixloop.api.deps import OrchestratorDep
from fixloop.core.engine.domain import IssueStatus
from fixloop.core.schemas import (
    CheckpointResponse,
    EventResponse,
    IssueBatchCreate,
    IssueResponse,
    MetricsResponse,
    SessionCreate,
    SessionResponse,
    SessionStatusResponse,
    SignalRequest,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/sessions", tags=["sessions"])


# ==========================================================================
# Sessions
# ==========================================================================

@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(request: SessionCreate, orchestrator: OrchestratorDep):
    """
    Create a resolution session for a repository.

    The session starts in ``pending``; add issues, then start it.
    """
    session = await orchestrator.create_session(
        request.repository_path,
        config=request.config,
        base_branch=request.base_branch,
    )
    return SessionResponse.model_validate(session)


@router.get("", response_model=list[SessionResponse])
async def list_sessions(orchestrator: OrchestratorDep):
    sessions = await orchestrator.list_sessions()
    return [SessionResponse.model_validate(s) for s in sessions]


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, orchestrator: OrchestratorDep):
    """Get a session by ID."""
    return SessionResponse.model_validate(await orchestrator.get_session(session_id))


@router.get("/{session_id}/status", response_model=SessionStatusResponse)
async def get_session_status(session_id: str, orchestrator: OrchestratorDep):
    """Session plus in-flight issues, backlog size and last event sequence."""
    data = await orchestrator.get_status(session_id)
    session = await orchestrator.get_session(session_id)
    return SessionStatusResponse(
        session=SessionResponse.model_validate(session),
        in_flight=data["in_flight"],
        backlog=data["backlog"],
        checkpoints=data["checkpoints"],
        mutation_lock_held=data["mutation_lock_held"],
        last_event_sequence=data["last_event_sequence"],
    )


@router.post("/{session_id}/start", response_model=SessionResponse)
async def start_session(session_id: str, orchestrator: OrchestratorDep):
    """
    Start a pending session.

    Creates the session branch and launches the dispatch loop.
    """
    session = await orchestrator.start(session_id)
    logger.info("Session started via API", session_id=session_id)
    return SessionResponse.model_validate(session)


@router.post("/{session_id}/signal", response_model=SessionResponse)
async def signal_session(session_id: str, request: SignalRequest, orchestrator: OrchestratorDep):
    """
    Send pause, resume or stop.

    Returns immediately; the status changes once in-flight work drains.
    """
    session = await orchestrator.signal(session_id, request.signal)
    return SessionResponse.model_validate(session)


# ==========================================================================
# Issues
# ==========================================================================

@router.post(
    "/{session_id}/issues",
    response_model=list[IssueResponse],
    status_code=status.HTTP_201_CREATED,
)
async def add_issues(session_id: str, request: IssueBatchCreate, orchestrator: OrchestratorDep):
    """Append issues to the backlog. Accepted while the session is running."""
    issues = await orchestrator.add_issues(session_id, [i.to_draft() for i in request.issues])
    return [IssueResponse.model_validate(issue) for issue in issues]


@router.get("/{session_id}/issues", response_model=list[IssueResponse])
async def list_issues(
    session_id: str,
    orchestrator: OrchestratorDep,
    status: Optional[IssueStatus] = None,
):
    """
    List issues in creation order.

    Args:
        status: Filter by status (pending, in_progress, resolved, failed, skipped)
    """
    issues = await orchestrator.list_issues(session_id, status=status)
    return [IssueResponse.model_validate(issue) for issue in issues]


@router.get("/{session_id}/issues/{issue_id}", response_model=IssueResponse)
async def get_issue(session_id: str, issue_id: str, orchestrator: OrchestratorDep):
    return IssueResponse.model_validate(await orchestrator.get_issue(session_id, issue_id))


# ==========================================================================
# Checkpoints
# ==========================================================================

@router.get("/{session_id}/checkpoints", response_model=list[CheckpointResponse])
async def list_checkpoints(session_id: str, orchestrator: OrchestratorDep):
    checkpoints = await orchestrator.list_checkpoints(session_id)
    return [CheckpointResponse.model_validate(c) for c in checkpoints]


@router.post(
    "/{session_id}/checkpoints/{checkpoint_id}/restore",
    response_model=CheckpointResponse,
)
async def restore_checkpoint(session_id: str, checkpoint_id: str, orchestrator: OrchestratorDep):
    """
    Reset the session branch to a checkpoint.

    Requires a paused or stopped session and a clean working tree.
    """
    checkpoint = await orchestrator.restore_checkpoint(session_id, checkpoint_id)
    return CheckpointResponse.model_validate(checkpoint)


@router.delete(
    "/{session_id}/checkpoints/{checkpoint_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_checkpoint(session_id: str, checkpoint_id: str, orchestrator: OrchestratorDep):
    await orchestrator.delete_checkpoint(session_id, checkpoint_id)


# ==========================================================================
# Metrics and event history
# ==========================================================================

@router.get("/{session_id}/metrics", response_model=MetricsResponse)
async def get_metrics(session_id: str, orchestrator: OrchestratorDep):
    metrics = await orchestrator.get_metrics(session_id)
    return MetricsResponse.model_validate(metrics)


@router.get("/{session_id}/events/history", response_model=list[EventResponse])
async def get_event_history(
    session_id: str,
    orchestrator: OrchestratorDep,
    since: int = Query(0, ge=0),
):
    """Events after sequence ``since`` still held in history."""
    await orchestrator.get_session(session_id)
    return [EventResponse(**e.to_dict()) for e in orchestrator.bus.history(session_id, since=since)]
