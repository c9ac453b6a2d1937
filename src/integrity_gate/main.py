"""
Device Integrity Gate
FastAPI application issuing and verifying Play Integrity / App Attest challenges
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, get_settings
from .middleware.no_store import NoStoreHeadersMiddleware
from .services.attestation import AttestationConfig, IntegrityOrchestrator, create_backend
from .utils.errors import error_handler

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the process-wide integrity services once and close them on shutdown"""
    owned_backend = None

    if getattr(app.state, "orchestrator", None) is None:
        config = AttestationConfig()
        config.log_config_summary()
        for issue in config.validate_config():
            logger.warning(f"Integrity configuration issue: {issue}")

        owned_backend = create_backend(config)
        app.state.backend = owned_backend
        app.state.orchestrator = IntegrityOrchestrator.build(config, owned_backend)
        logger.info(f"Integrity services started - Backend: {owned_backend.name}")

    try:
        yield
    finally:
        if owned_backend is not None:
            logger.info("Closing integrity persistence backend...")
            await owned_backend.close()


def create_app(settings: Optional[Settings] = None,
               orchestrator: Optional[IntegrityOrchestrator] = None) -> FastAPI:
    """
    Create the application.

    Args:
        settings: Application settings, loaded from the environment when omitted
        orchestrator: Prebuilt orchestrator; its backend stays owned by the caller
    """
    settings = settings or get_settings()
    logging.getLogger().setLevel(settings.log_level)

    app = FastAPI(
        title="Device Integrity Gate",
        description="""
        ## Device Integrity Gate API

        Issues single-use challenges and verifies the platform attestations that embed them.

        ### Endpoints:
        - `GET /integrity/challenge` - Issue a challenge (`platform=android|ios`, `keyId` for iOS)
        - `POST /integrity/android/verify` - Verify a Play Integrity token
        - `POST /integrity/ios/attest` - Enroll an App Attest key
        - `POST /integrity/ios/assert` - Verify an App Attest assertion
        """,
        version="1.0.0",
        lifespan=lifespan,
        tags_metadata=[
            {
                "name": "Integrity",
                "description": "Challenge issuance and platform verification",
            },
            {
                "name": "Health",
                "description": "Liveness and readiness checks",
            }
        ]
    )

    app.state.settings = settings
    app.state.orchestrator = orchestrator
    if orchestrator is not None:
        app.state.backend = orchestrator.challenges.backend

    app.add_middleware(NoStoreHeadersMiddleware)
    app.add_exception_handler(StarletteHTTPException, error_handler)

    # Import and include routers
    from .routers import integrity
    from .health import readiness
    app.include_router(integrity.router)
    app.include_router(readiness.router, tags=["Health"])

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=5000)
