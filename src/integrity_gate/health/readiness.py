"""
Readiness and liveness checks for the Device Integrity Gate
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ..dependencies import get_orchestrator
from ..services.attestation import IntegrityOrchestrator, PersistenceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/ready")
async def readiness_check(
    request: Request,
    orchestrator: IntegrityOrchestrator = Depends(get_orchestrator),
):
    """Readiness: challenge store reachable and configuration complete"""
    checks = {
        "persistence": False,
        "configuration": False,
    }

    details = {}

    backend = request.app.state.backend
    try:
        checks["persistence"] = await backend.ping()
        details["persistence"] = {
            "backend": backend.name,
            "durable": backend.durable,
            "reachable": checks["persistence"],
        }
    except PersistenceError as e:
        logger.warning(f"Readiness ping failed: {e}")
        details["persistence"] = {"backend": backend.name, "durable": backend.durable,
                                  "reachable": False}

    issues = orchestrator.config.validate_config()
    checks["configuration"] = not issues
    details["configuration"] = {"issues": issues}

    details["collaborators"] = {
        "android": orchestrator.play_integrity.get_configuration_status(),
        "ios": orchestrator.app_attest.get_configuration_status(),
    }
    details["verification"] = orchestrator.get_metrics()

    all_ready = all(checks.values())

    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "ready": all_ready,
            "status": "healthy" if all_ready else "degraded",
            "checks": checks,
            "details": details,
            "timestamp": asyncio.get_event_loop().time()
        },
    )


@router.get("/live")
async def liveness_check():
    """Simple liveness check for container orchestration"""
    return {
        "alive": True,
        "service": "integrity-gate",
        "timestamp": asyncio.get_event_loop().time()
    }
