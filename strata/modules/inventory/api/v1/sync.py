"""
Inventory Sync API

Provides endpoints for:
- Triggering a scoped sync of one resource kind
- Triggering a provider group sync
- Viewing recent sync tasks
- Checking ledger integrity of a scope
"""

from typing import Annotated, List

import structlog
from fastapi import APIRouter, Depends, Query, Request

from strata.modules.inventory.domain.engine import verify_integrity
from strata.modules.inventory.domain.kinds import get_kind
from strata.modules.inventory.domain.orchestrator import Orchestrator
from strata.schemas.inventory import (
    IntegrityReport,
    SyncGroupRequest,
    SyncGroupResponse,
    SyncRequest,
    SyncTaskResponse,
)
from strata.shared.core.exceptions import ConfigurationError

router = APIRouter(tags=["Inventory Sync"])
logger = structlog.get_logger()


def get_orchestrator(request: Request) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise ConfigurationError("Sync orchestrator is not initialized")
    return orchestrator


OrchestratorDep = Annotated[Orchestrator, Depends(get_orchestrator)]


@router.post("/sync", response_model=SyncTaskResponse)
async def trigger_sync(body: SyncRequest, orchestrator: OrchestratorDep) -> SyncTaskResponse:
    """Run one sync task to completion and return its final state."""
    logger.info(
        "inventory_sync_requested",
        provider=body.provider,
        scope=body.scope,
        kind=body.kind,
    )
    task = await orchestrator.trigger(body.provider, body.scope, body.kind)
    return SyncTaskResponse(**task.to_dict())


@router.post("/sync/groups", response_model=SyncGroupResponse)
async def trigger_group_sync(
    body: SyncGroupRequest, orchestrator: OrchestratorDep
) -> SyncGroupResponse:
    group = await orchestrator.run_group(body.provider, body.scope, body.kinds)
    return SyncGroupResponse(
        group_id=group.group_id,
        provider=group.provider,
        scope=group.scope,
        attempts=group.attempts,
        tasks=[SyncTaskResponse(**task.to_dict()) for task in group.tasks],
    )


@router.get("/tasks", response_model=List[SyncTaskResponse])
async def list_tasks(
    orchestrator: OrchestratorDep,
    limit: int = Query(50, ge=1, le=500),
) -> List[SyncTaskResponse]:
    return [SyncTaskResponse(**task.to_dict()) for task in orchestrator.recent_tasks(limit)]


@router.get("/tasks/{task_id}", response_model=SyncTaskResponse)
async def get_task(task_id: str, orchestrator: OrchestratorDep) -> SyncTaskResponse:
    return SyncTaskResponse(**orchestrator.get_task(task_id).to_dict())


@router.get("/integrity", response_model=IntegrityReport)
async def check_integrity(
    orchestrator: OrchestratorDep,
    kind: str = Query(..., min_length=1),
    scope: str = Query(..., min_length=1),
) -> IntegrityReport:
    """Verify the single-open-interval invariant and snapshot/history agreement."""
    violations = await verify_integrity(orchestrator.session_maker, get_kind(kind), scope)
    if violations:
        logger.warning(
            "inventory_integrity_violations",
            kind=kind,
            scope=scope,
            violations=len(violations),
        )
    return IntegrityReport(kind=kind, scope=scope, ok=not violations, violations=violations)
