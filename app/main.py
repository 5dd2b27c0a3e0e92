from __future__ import annotations

from fastapi import FastAPI, HTTPException

from app.api.routers import devices, identity, notifications, requests
from app.infra.audit import AuditMiddleware
from app.infra.db import check_db_ready
from app.infra.log import setup_logging
from app.infra.redis_state import check_redis_ready

setup_logging()

app = FastAPI(
    title="agro-provisioning",
    description="Device request lifecycle and device assignment service for farm monitoring.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(requests.router, prefix="/api/requests", tags=["requests"])
app.include_router(devices.router, prefix="/api/devices", tags=["devices"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
