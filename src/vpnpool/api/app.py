"""
FastAPI application for the VPN session orchestrator.
"""

import logging
import os

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text

from vpnpool.api.vpn import router as vpn_router
from vpnpool.common.db.connection import get_engine
from vpnpool.common.errors import VPNPoolError

logger = logging.getLogger(__name__)


app = FastAPI(title="VPN Pool API")
app.include_router(vpn_router)


@app.exception_handler(VPNPoolError)
async def vpnpool_error_handler(request: Request, exc: VPNPoolError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(exc.as_payload(), status_code=exc.status_code, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {
            "error": "Invalid request",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        },
        status_code=400,
    )


@app.get("/health")
def health_check():
    """Health check endpoint that verifies the database is reachable."""
    checks = {}
    all_healthy = True

    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)[:100]}"
        all_healthy = False

    checks["status"] = "healthy" if all_healthy else "degraded"
    status_code = 200 if all_healthy else 503
    return JSONResponse(checks, status_code=status_code)


def main(reload: bool = False):
    """Run the FastAPI server in debug mode with auto-reloading."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "vpnpool.api.app:app",
        host="0.0.0.0",
        port=8000,
        reload=reload,
        log_level="debug",
    )


if __name__ == "__main__":
    main(os.getenv("RELOAD", "false") == "true")
