from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from app.core.config import settings
from app.core.security import require_admin_token
from app.delivery.coordinator import CoordinatorNotRunning, MessagingCoordinator
from app.delivery.producer import ProducerNotRunning
from app.delivery.runtime import get_coordinator

router = APIRouter()


class SuccessRateIn(BaseModel):
    success_rate: float


class SweepIn(BaseModel):
    older_than_s: float | None = Field(default=None, ge=0)


@router.get("/health")
def messaging_health(coordinator: MessagingCoordinator = Depends(get_coordinator)) -> dict:
    return coordinator.health()


@router.get("/stats")
def messaging_stats(hours: int = 24, coordinator: MessagingCoordinator = Depends(get_coordinator)) -> dict:
    return coordinator.processing_stats(hours=hours)


@router.post("/trigger", dependencies=[Depends(require_admin_token)])
def messaging_trigger(coordinator: MessagingCoordinator = Depends(get_coordinator)) -> dict:
    try:
        result = coordinator.trigger_now()
    except (CoordinatorNotRunning, ProducerNotRunning) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"ok": True, **result.as_dict()}


@router.get("/vendor")
def vendor_stats(coordinator: MessagingCoordinator = Depends(get_coordinator)) -> dict:
    return coordinator.vendor_stats()


@router.put("/vendor/success_rate", dependencies=[Depends(require_admin_token)])
def set_vendor_success_rate(payload: SuccessRateIn, coordinator: MessagingCoordinator = Depends(get_coordinator)) -> dict:
    try:
        return coordinator.set_vendor_success_rate(payload.success_rate)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/maintenance/sweep_stuck", dependencies=[Depends(require_admin_token)])
def sweep_stuck(payload: SweepIn | None = None, coordinator: MessagingCoordinator = Depends(get_coordinator)) -> dict:
    older_than_s = payload.older_than_s if payload and payload.older_than_s is not None else settings.STUCK_PROCESSING_AFTER_S
    ids = coordinator.sweep_stuck(older_than_s=older_than_s)
    return {"ok": True, "reset": len(ids), "communication_ids": ids}
