from fastapi import APIRouter

from erasure.api.v1 import admin_deletions, deletion
from erasure.core.metrics import snapshot as metrics_snapshot

api_router = APIRouter()

api_router.include_router(deletion.router)
api_router.include_router(admin_deletions.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict[str, int]:
    return metrics_snapshot()
