"""
routers/health.py

Health and readiness endpoints for deploys and runtime monitoring.

Non-developer summary:
----------------------
- /healthz   → "Is the process up?" (simple yes/no)
- /readyz    → "Are shared dependencies reachable?" (Redis, when configured)
This helps the deployment pipeline decide whether to route traffic to this instance.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from ..infra.redis import ping_redis
from ..schemas.common import Readiness

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz():
    """
    Liveness probe. No external dependencies are checked here.
    """
    return JSONResponse({"status": "ok"})


@router.get("/readyz")
async def readyz():
    """
    Readiness probe.
    - If a Redis URL is configured, pings Redis (rate limits and caches live there).
    - Returns 503 (degraded) when a configured dependency is down.
    """
    redis_ok = await ping_redis()
    ready = Readiness(
        status="degraded" if redis_ok is False else "ok",
        dependencies={"redis": redis_ok},
    )
    return JSONResponse(ready.model_dump(), status_code=503 if redis_ok is False else 200)
