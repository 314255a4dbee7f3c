"""
Peritagem Lifecycle Service - FastAPI Application

Serves the inspection lifecycle over HTTP:
- inspection records and their sanctioned transitions
- per-record audit timeline and next-step guidance
- stage distribution summary
- intake queue of cylinders awaiting inspection

Run with:
    uvicorn peritagem.main:app
"""

import logging

from fastapi import FastAPI

from . import SERVICE_NAME, __version__
from .config import load_settings
from .inspection_model import utcnow
from .inspection_router import router as inspection_router
from .inspection_service import get_inspection_service

# -----------------------------------------------------------------------------
# Logging Configuration
# -----------------------------------------------------------------------------
settings = load_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("peritagem_service")

# -----------------------------------------------------------------------------
# Application
# -----------------------------------------------------------------------------
app = FastAPI(
    title=SERVICE_NAME,
    description="Hydraulic-cylinder inspection lifecycle",
    version=__version__
)

app.include_router(inspection_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": SERVICE_NAME,
        "status": "running",
        "version": __version__
    }


@app.get("/health")
async def health_check():
    """Detailed health check."""
    components = {
        "api": "operational",
        "store_backend": settings.store_backend,
    }
    if settings.store_backend == "file":
        components["data_dir"] = settings.data_dir.exists()
    if settings.store_backend == "supabase":
        components["supabase_configured"] = bool(settings.supabase_url and settings.supabase_key)

    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "components": components,
        "version": __version__,
        "capabilities": [
            "status_canonicalization",
            "role_gated_transitions",
            "audit_history",
            "timeline_reconstruction",
            "worklists",
            "stage_summary",
            "intake_queue",
        ],
    }


@app.on_event("startup")
async def startup_event():
    logger.info(f"{SERVICE_NAME} {__version__} starting")
    logger.info(f"Settings: {settings.to_dict()}")
    get_inspection_service()


# -----------------------------------------------------------------------------
# Main Entry Point (for development)
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
