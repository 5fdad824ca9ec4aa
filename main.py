from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

from onboarding.config import settings
from onboarding.errors import PersistenceUnavailableError
from onboarding.infrastructure.resilience import HealthChecker
from onboarding.obs.logger import log_event
from onboarding.obs.metrics import get_metrics_snapshot, set_gauge
from onboarding.obs.middleware import ObservabilityMiddleware
from onboarding.session.cache import RedisSessionCache, create_session_cache
from onboarding.session.manager import OnboardingSessionManager
from onboarding.session.scheduler import SessionScheduler
from onboarding.steps.catalog import create_step_catalog

load_dotenv()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log_event("startup", service="onboarding-session-engine", env=settings.APP_ENV)

    app.state.session_cache = create_session_cache(settings)
    redis_client = (
        app.state.session_cache.client
        if isinstance(app.state.session_cache, RedisSessionCache)
        else None
    )
    app.state.step_catalog = create_step_catalog(settings, redis_client)
    app.state.scheduler = SessionScheduler(
        tick_seconds=settings.SCHEDULER_TICK_SECONDS,
        sweep_interval_seconds=settings.CLEANUP_SWEEP_INTERVAL_SECONDS,
    )

    # One manager per process, injected into handlers through app.state
    app.state.session_manager = OnboardingSessionManager(
        cache=app.state.session_cache,
        catalog=app.state.step_catalog,
        scheduler=app.state.scheduler,
        settings=settings,
    )
    app.state.scheduler.start()

    yield

    # Shutdown
    await app.state.scheduler.stop()
    log_event("shutdown", service="onboarding-session-engine")


app = FastAPI(
    title="Onboarding Session Engine",
    version="1.0.0",
    lifespan=lifespan
)


@app.get("/")
async def root():
    return {
        "service": "Onboarding Session Engine",
        "version": "1.0.0",
        "status": "running",
    }


@app.get("/health")
async def health():
    return {"status": "healthy", "service": "onboarding-session-engine"}


@app.get("/health/detailed")
async def detailed_health(request: Request):
    health_checker = HealthChecker()
    state = request.app.state

    def check_session_cache():
        return state.session_cache.ping()

    def check_scheduler():
        return state.scheduler.is_running

    health_checker.register_check("session_cache", check_session_cache)
    health_checker.register_check("scheduler", check_scheduler, critical=False)

    results = await health_checker.run_checks()
    status_code = 503 if results["status"] == "unhealthy" else 200
    return JSONResponse(results, status_code=status_code)


@app.get("/metrics")
async def metrics(request: Request):
    # Guard against missing state when the lifespan has not run (bare TestClient)
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is not None:
        for kind, count in scheduler.armed_counts().items():
            set_gauge("scheduler_pending_jobs", count, {"kind": kind})
    catalog = getattr(request.app.state, "step_catalog", None)
    catalog_stats = catalog.get_cache_stats() if hasattr(catalog, "get_cache_stats") else {"source": "static"}

    snapshot = get_metrics_snapshot()
    snapshot["step_catalog"] = catalog_stats
    return snapshot


@app.get("/admin/onboarding/sessions/{session_id}")
def get_onboarding_session(request: Request, session_id: str):
    """Admin endpoint to read a session snapshot for support and audit"""
    manager: OnboardingSessionManager = request.app.state.session_manager
    try:
        state = manager.get_session(session_id)
    except PersistenceUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if state is None:
        raise HTTPException(status_code=404, detail="Session not found")

    payload = state.model_dump(mode="json")
    payload["completion_percentage"] = manager.completion_percentage(state)
    return payload


# Apply middleware
app = ObservabilityMiddleware(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8001,
        reload=True,
        log_level="info"
    )
