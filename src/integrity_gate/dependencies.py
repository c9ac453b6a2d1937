"""
FastAPI dependencies for the process-wide integrity services
"""

from fastapi import Request

from .config import Settings
from .services.attestation import IntegrityOrchestrator


def get_orchestrator(request: Request) -> IntegrityOrchestrator:
    """Orchestrator built once by the application lifespan"""
    return request.app.state.orchestrator


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings
