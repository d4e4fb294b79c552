"""Health check endpoint."""

from __future__ import annotations

import time

from fastapi import APIRouter, Request

router = APIRouter()

_start_time = time.time()


@router.get("/health")
async def health(request: Request) -> dict:
    config = request.app.state.config
    clients = request.app.state.clients
    return {
        "status": "ok",
        "version": "0.1.0",
        "uptime_seconds": round(time.time() - _start_time, 1),
        "providers": {channel_type.value: client.name for channel_type, client in clients.items()},
        "pending_notifications": len(request.app.state.notifications),
        "verification_sweep_interval_s": config.verification.sweep_interval_s,
    }
