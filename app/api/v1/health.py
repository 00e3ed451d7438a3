"""Health check endpoint."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

router = APIRouter()

# Wired in during lifespan
_prober = None
_store = None


def set_dependencies(prober, store):
    global _prober, _store
    _prober = prober
    _store = store


@router.get("/health")
async def health_check():
    """Object storage and job store reachability. 503 if either is down."""
    storage_ok = _prober is not None and await _prober.check_health()
    store_ok = _store is not None and await _store.ping()
    healthy = storage_ok and store_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": {
                "storage": "ok" if storage_ok else "error",
                "jobStore": "ok" if store_ok else "error",
            },
        },
    )
