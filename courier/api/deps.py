"""
Shared API Dependencies
========================

The delivery manager lives on ``app.state`` for the lifetime of the app;
routes receive it through ``get_manager``.
"""

from fastapi import HTTPException, Request

from courier.infra.runtime.manager import DeliveryManager

__all__ = ["get_manager"]

def get_manager(request: Request) -> DeliveryManager:
    manager: DeliveryManager | None = getattr(request.app.state, "manager", None)
    if manager is None or not manager.started:
        raise HTTPException(status_code=503, detail="Delivery manager is not running")
    return manager
