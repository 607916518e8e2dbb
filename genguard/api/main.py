"""
genguard API - operational endpoints for the generation guards.

Feature routes live in the host application; they build a GenerationGuard
from app.state and let GuardError propagate to the registered handlers.
"""

import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from genguard.core import LocalFallbackCounter, Settings, build_generation_guard, get_settings
from genguard.core.metrics import get_metrics
from genguard.storage import RedisStore

from .errors import register_error_handlers

logger = structlog.get_logger()

_bearer_scheme = HTTPBearer(auto_error=False)


async def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
):
    """Bearer check against GENGUARD_API_KEY; disabled when the key is empty."""
    settings: Settings = request.app.state.settings
    if not settings.api_key:
        return
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Missing API key")
    if not secrets.compare_digest(credentials.credentials, settings.api_key):
        raise HTTPException(status_code=401, detail="Invalid API key")


def create_app(settings: Settings | None = None, store=None) -> FastAPI:
    """Build the API. `store` overrides the Redis adapter (tests)."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("starting_genguard_api", env=settings.env, budget_fail_mode=settings.budget_fail_mode.value)

        backing = store if store is not None else RedisStore(settings)
        fallback = LocalFallbackCounter(settings.fallback_sweep_interval_seconds)
        try:
            await backing.connect()
            fallback.start()

            app.state.store = backing
            app.state.fallback = fallback
            app.state.guard = build_generation_guard(backing, settings, fallback)
            yield
        finally:
            logger.info("shutting_down_genguard_api")
            await fallback.stop()
            await backing.close()

    app = FastAPI(
        title="genguard",
        description="Rate, budget and lock guards for billed generation",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    register_error_handlers(app)

    @app.get("/health")
    async def health_check(request: Request):
        """Backing store reachability (always public for monitoring)."""
        backing = request.app.state.store
        redis_ok = await backing.probe()
        return {
            "status": "healthy" if redis_ok else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "redis": "ok" if redis_ok else "unavailable",
                "rate_limit_backend": "redis" if redis_ok else "memory",
                "budget_fail_mode": settings.budget_fail_mode.value,
            },
        }

    @app.get("/budget", dependencies=[Depends(require_admin)])
    async def budget_status(request: Request):
        """Today's spend against the daily ceiling."""
        status = await request.app.state.guard.budget.get_budget_status()
        return status.model_dump()

    @app.get("/metrics")
    async def prometheus_metrics(request: Request):
        """Prometheus metrics endpoint (public, standard for scraping)."""
        metrics = get_metrics()
        metrics.set_gauge("genguard_fallback_counters", value=float(len(request.app.state.fallback)))
        metrics.set_gauge("genguard_redis_available", value=1.0 if request.app.state.store.is_available else 0.0)
        return PlainTextResponse(
            content=metrics.prometheus_format(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return app


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "genguard.api.main:create_app",
        factory=True,
        host=_settings.api_host,
        port=_settings.api_port,
        reload=_settings.debug,
    )
