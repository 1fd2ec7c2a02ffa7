"""
Training control routes for the FL dashboard.

These routes drive the server-side orchestrator: submit a client setup,
trigger rounds by hand, poll, renew the session, reset, and read the
snapshot the dashboard renders. The orchestrator itself lives on
``app.state`` and runs the round and poll loops in the background.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from .client_setup import ClientSetup, ClientSpec
from .orchestrator import TrainingOrchestrator, TrainingPhase
from .settings import DashboardSettings

router = APIRouter(prefix="/dashboard")


# ============= Request/Response Models =============


class SetupRequest(BaseModel):
    """Client setup submitted from the configuration form."""

    clients: List[ClientSpec] = Field(..., min_length=1, description="Participating clients")
    local_epochs: int = Field(1, ge=1, description="Local epochs per round")
    batch_size: int = Field(32, ge=1, description="Local batch size")
    noise_multiplier: float = Field(1.0, gt=0, description="DP noise multiplier")
    l2_norm_clip: float = Field(1.0, gt=0, description="DP per-update L2 clip norm")


class SetupSummaryResponse(BaseModel):
    """Validation summary for a client setup."""

    clients: List[Dict[str, Any]]
    num_clients: int
    total_data_size: int
    high_load: bool
    issues: List[str] = []
    valid: bool


class RoundTriggerResponse(BaseModel):
    """Result of a manual round trigger."""

    dispatched: bool
    reconciled: bool = False
    poll_attempts: int = 0
    error: Optional[str] = None
    state: Dict[str, Any]


# ============= Dependencies =============


def get_orchestrator(request: Request) -> TrainingOrchestrator:
    return request.app.state.orchestrator


def get_settings(request: Request) -> DashboardSettings:
    return request.app.state.settings


def _build_setup(request: SetupRequest, settings: DashboardSettings) -> ClientSetup:
    return ClientSetup(
        clients=request.clients,
        max_clients=settings.max_clients,
        max_total_data_size=settings.max_total_data_size,
        high_load_data_size=settings.high_load_data_size,
    )


# ============= Routes =============


@router.get("/state")
async def get_state(orchestrator: TrainingOrchestrator = Depends(get_orchestrator)):
    """Current orchestrator snapshot."""
    return orchestrator.snapshot()


@router.post("/setup/validate", response_model=SetupSummaryResponse)
async def validate_setup(
    request: SetupRequest,
    settings: DashboardSettings = Depends(get_settings),
):
    """Check a client setup against the data volume rules without submitting it."""
    setup = _build_setup(request, settings)
    return SetupSummaryResponse(**setup.summary())


@router.post("/start")
async def start_training(
    request: SetupRequest,
    orchestrator: TrainingOrchestrator = Depends(get_orchestrator),
    settings: DashboardSettings = Depends(get_settings),
):
    """
    Validate the setup, initialize training on the service and start the
    round and poll loops.

    An invalid setup is rejected with 400 and never reaches the service.
    """
    setup = _build_setup(request, settings)
    # Raises ConfigValidationError -> 400 via the app exception handler
    setup.validate()

    if orchestrator.phase != TrainingPhase.IDLE:
        raise HTTPException(
            status_code=409,
            detail=f"Training already {orchestrator.phase.value}; reset first",
        )

    started = await orchestrator.start_training(
        setup,
        local_epochs=request.local_epochs,
        batch_size=request.batch_size,
        noise_multiplier=request.noise_multiplier,
        l2_norm_clip=request.l2_norm_clip,
    )
    if not started:
        raise HTTPException(
            status_code=502,
            detail=orchestrator.error or "Failed to initialize training",
        )
    return orchestrator.snapshot()


@router.post("/train_round", response_model=RoundTriggerResponse)
async def trigger_round(orchestrator: TrainingOrchestrator = Depends(get_orchestrator)):
    """
    Trigger one training round now.

    Dropped (dispatched=false) if a round is already running or training
    is not active.
    """
    result = await orchestrator.execute_round()
    if result is None:
        return RoundTriggerResponse(
            dispatched=False,
            error=orchestrator.error,
            state=orchestrator.snapshot(),
        )
    return RoundTriggerResponse(
        dispatched=result.dispatched,
        reconciled=result.reconciled,
        poll_attempts=result.poll_attempts,
        error=result.error,
        state=orchestrator.snapshot(),
    )


@router.post("/poll")
async def poll_now(orchestrator: TrainingOrchestrator = Depends(get_orchestrator)):
    """Refresh state and metrics from the service."""
    refreshed = await orchestrator.poll_state()
    return {"refreshed": refreshed, "state": orchestrator.snapshot()}


@router.post("/session/renew")
async def renew_session(orchestrator: TrainingOrchestrator = Depends(get_orchestrator)):
    """Validate the current session, replacing it if the service dropped it."""
    session_id = await orchestrator.acquire_session(renew=True)
    if session_id is None:
        raise HTTPException(
            status_code=503,
            detail=orchestrator.error or "Failed to initialize session",
        )
    return {"session_id": session_id, "state": orchestrator.snapshot()}


@router.post("/reset")
async def reset_training(orchestrator: TrainingOrchestrator = Depends(get_orchestrator)):
    """Reset training on the service and return to the setup step."""
    success = await orchestrator.reset()
    return {"success": success, "state": orchestrator.snapshot()}
