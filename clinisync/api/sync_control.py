"""
Sync Control API Routes.

Operator endpoints for the sync engine: health and statistics, forced
reconciliation, alert handling, pending conflict resolutions and the
resolution pattern table.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from clinisync.monitoring.alert_manager import AlertSeverity, AlertStatus
from clinisync.sync.connectors.base import StoreError
from clinisync.sync.models import StoreSide, StrategyName
from clinisync.sync.orchestrator.sync_orchestrator import ResolutionOutdated, SyncOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/sync", tags=["sync-control"])


# ============================================================================
# Request/Response Models
# ============================================================================

class ResolveAlertRequest(BaseModel):
    """Request model for resolving an alert."""
    notes: Optional[str] = Field(None, max_length=1000)


class ConfirmResolutionRequest(BaseModel):
    """
    Operator decision on a pending resolution.

    Either take the whole record from one store or give explicit values.
    """
    prefer: Optional[StoreSide] = None
    payload: Optional[Dict[str, Any]] = None


class PatternUpdate(BaseModel):
    """Request model for overriding a resolution pattern."""
    pattern: str = Field(..., min_length=3, description="table.field or table.*")
    strategy: StrategyName
    config: Dict[str, Any] = Field(default_factory=dict)


class ForceSyncResponse(BaseModel):
    """Response model for a forced reconciliation."""
    tables: Dict[str, Dict[str, int]]
    queued: int


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """The engine attached to the application."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Sync engine not configured")
    return orchestrator


# ============================================================================
# Routes
# ============================================================================

@router.get("/status")
async def get_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Current health report of the engine."""
    report = orchestrator.get_health_report().to_dict()
    report["state"] = orchestrator.state.value
    return report


@router.get("/stats")
async def get_stats(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Counters of every engine component."""
    return orchestrator.get_stats()


@router.post("/force-sync", response_model=ForceSyncResponse)
async def force_sync(
    table: Optional[str] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """
    Reconcile one table, or every synchronized table, right now.

    Other tables keep their capture positions.
    """
    try:
        result = await orchestrator.force_sync(table)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))

    queued = sum(sum(counts.values()) for counts in result.values())
    logger.info(f"Forced sync requested for {table or 'all tables'}: {queued} operations queued")
    return ForceSyncResponse(tables=result, queued=queued)


@router.get("/alerts")
async def list_alerts(
    status: Optional[AlertStatus] = None,
    severity: Optional[AlertSeverity] = None,
    limit: int = Query(100, ge=1, le=1000),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
) -> List[Dict[str, Any]]:
    """Alerts, most severe and newest first."""
    return [
        alert.to_dict()
        for alert in orchestrator.get_alerts(status=status, severity=severity, limit=limit)
    ]


@router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(alert_id: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Acknowledge an active alert."""
    if not await orchestrator.acknowledge_alert(alert_id):
        raise HTTPException(status_code=409, detail="Alert not found or not active")
    return {"id": alert_id, "acknowledged": True}


@router.post("/alerts/{alert_id}/resolve")
async def resolve_alert(
    alert_id: str,
    body: Optional[ResolveAlertRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """Resolve an alert."""
    notes = body.notes if body else None
    if not await orchestrator.resolve_alert(alert_id, notes=notes):
        raise HTTPException(status_code=409, detail="Alert not found or already resolved")
    return {"id": alert_id, "resolved": True}


@router.get("/resolutions/pending")
async def list_pending_resolutions(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Conflicts waiting for an operator decision."""
    return [resolution.to_dict() for resolution in orchestrator.get_pending_resolutions()]


@router.post("/resolutions/{resolution_id}/confirm")
async def confirm_resolution(
    resolution_id: str,
    body: ConfirmResolutionRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """
    Apply an operator decision to both stores.

    A store failure answers 503 while the write keeps being retried; the
    resolution stays pending until it lands.
    """
    try:
        resolution = await orchestrator.confirm_resolution(
            resolution_id, prefer=body.prefer, payload=body.payload
        )
    except KeyError:
        raise HTTPException(status_code=404, detail="Pending resolution not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ResolutionOutdated as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"{e}; the write will be retried")
    return resolution.to_dict()


@router.get("/patterns")
async def list_patterns(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """The resolution pattern table."""
    return orchestrator.get_resolution_patterns()


@router.put("/patterns")
async def update_pattern(body: PatternUpdate, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Override the strategy for a field or a whole table."""
    try:
        orchestrator.update_resolution_pattern(body.pattern, body.strategy, body.config)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return orchestrator.get_resolution_patterns()
