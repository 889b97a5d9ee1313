"""
V1 API - Delivery Routes
=========================

Thin HTTP surface over a ``DeliveryManager``:

  POST   /v1/requests                  submit and wait for the outcome
  POST   /v1/requests/batch            submit several, collect outcomes
  DELETE /v1/requests/{request_id}     cancel a live request
  GET    /v1/status                    queue, circuits, history
  GET    /v1/metrics                   delivery summary
  POST   /v1/circuits/{action}/reset   close a circuit manually
  GET    /metrics                      Prometheus exposition
"""

import asyncio
import contextlib
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from courier.core.types import Priority
from courier.infra.runtime.manager import DeliveryManager
from courier.utils.cancellation import CancellationToken, watch_disconnect

from .deps import get_manager

router = APIRouter()

# ==================== Request Models ====================

class SubmitRequest(BaseModel):
    action: str = Field(..., min_length=1, max_length=128)
    payload: dict[str, str | int | float | bool | None] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    max_attempts: int | None = Field(default=None, ge=1, le=20)

class BatchSubmitRequest(BaseModel):
    requests: list[SubmitRequest] = Field(..., min_length=1, max_length=100)
    fail_fast: bool = False

class DeliveryResponse(BaseModel):
    request_id: str
    action: str
    data: Any = None
    attempts: int
    meta: dict[str, Any] = Field(default_factory=dict)

# ==================== Routes ====================

@router.post("/v1/requests", response_model=DeliveryResponse)
async def submit_request(
    body: SubmitRequest,
    request: Request,
    manager: DeliveryManager = Depends(get_manager),
) -> DeliveryResponse:
    """Deliver one request; the response carries the endpoint's data."""
    token = CancellationToken()
    watcher = asyncio.create_task(watch_disconnect(request, token))
    try:
        result = await manager.submit(
            body.action,
            body.payload,
            priority=body.priority,
            max_attempts=body.max_attempts,
            cancel_token=token,
        )
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
    return DeliveryResponse(
        request_id=result.request_id,
        action=result.action,
        data=result.data,
        attempts=result.attempts,
        meta=dict(result.meta),
    )

@router.post("/v1/requests/batch")
async def submit_batch(
    body: BatchSubmitRequest,
    manager: DeliveryManager = Depends(get_manager),
) -> dict[str, Any]:
    batch = await manager.submit_batch(
        [item.model_dump() for item in body.requests], fail_fast=body.fail_fast
    )
    return batch.to_dict()

@router.delete("/v1/requests/{request_id}")
async def cancel_request(
    request_id: str, manager: DeliveryManager = Depends(get_manager)
) -> dict[str, Any]:
    if not manager.cancel(request_id, reason="Cancelled via API"):
        raise HTTPException(status_code=404, detail=f"No live request {request_id}")
    return {"request_id": request_id, "cancelled": True}

@router.get("/v1/status")
async def get_status(manager: DeliveryManager = Depends(get_manager)) -> dict[str, Any]:
    return manager.status()

@router.get("/v1/metrics")
async def get_metrics(manager: DeliveryManager = Depends(get_manager)) -> dict[str, Any]:
    return dict(manager.metrics)

@router.post("/v1/circuits/{action}/reset")
async def reset_circuit(
    action: str, manager: DeliveryManager = Depends(get_manager)
) -> dict[str, Any]:
    manager.reset_circuit(action)
    return {"action": action, "circuit": manager.breaker.status(action)}

@router.get("/metrics")
async def prometheus_metrics(manager: DeliveryManager = Depends(get_manager)) -> Response:
    return Response(content=manager.export_prometheus(), media_type=CONTENT_TYPE_LATEST)
