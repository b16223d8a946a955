from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import asyncio
import logging
import os
from pathlib import Path
from fastapi.middleware.cors import CORSMiddleware

from deadswitch.api.router import api_router
from deadswitch.core.config import settings
from deadswitch.core.errors import ConditionConfigError, ConditionForbidden, ConditionNotFound
from deadswitch.db.init_db import create_tables
from deadswitch.services.cache import TTLCache
from deadswitch.services.dispatcher import dispatch_loop
from deadswitch.services.events import EventNotifier, GLOBAL
from deadswitch.services.notification_ws import manager as ws_manager
from deadswitch.services.sender import build_sender

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("deadswitch")

def _run_migrations_if_needed():
    """Apply Alembic migrations automatically in production if enabled.

    Controlled by env var AUTO_APPLY_MIGRATIONS (default: '1'). Safe to run repeatedly.
    """
    if settings.env.lower() != "prod":
        return
    if os.getenv("AUTO_APPLY_MIGRATIONS", "1") != "1":
        return
    try:
        from alembic import command  # type: ignore
        from alembic.config import Config  # type: ignore
        alembic_ini = Path(__file__).resolve().parents[1] / "alembic.ini"
        if not alembic_ini.exists():
            logger.warning(f"[migrate] alembic.ini not found at {alembic_ini}, skipping auto-migrations")
            return
        cfg = Config(str(alembic_ini))
        # Ensure script_location resolves correctly when launched from arbitrary CWD
        script_location = Path(__file__).resolve().parents[1] / "alembic"
        if script_location.exists():
            cfg.set_main_option("script_location", str(script_location))
        logger.info("[migrate] Applying Alembic migrations -> head ...")
        command.upgrade(cfg, "head")
        logger.info("[migrate] Migrations applied successfully")
    except Exception:  # pragma: no cover
        # Do not kill the app on migration failure; can be retried manually.
        logger.exception("[migrate] Migration failed")

app = FastAPI(title=settings.app_name, version="0.1.0")

# One notifier and one read cache per process; handlers invalidate the cache when they publish.
app.state.events = EventNotifier()
app.state.cache = TTLCache(settings.condition_cache_ttl_seconds)
app.state.events.subscribe(GLOBAL, lambda event: app.state.cache.invalidate(event.condition_id))

# Configurable CORS origins (CORS_ORIGINS env). If empty -> dev defaults.
origins = settings.cors_origins
logger.info(f"[startup] Resolved CORS origins: {origins}")
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)

@app.exception_handler(ConditionConfigError)
async def _config_error(request: Request, exc: ConditionConfigError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})

@app.exception_handler(ConditionNotFound)
async def _not_found(request: Request, exc: ConditionNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(ConditionForbidden)
async def _forbidden(request: Request, exc: ConditionForbidden):
    return JSONResponse(status_code=403, content={"detail": str(exc)})

@app.on_event("startup")
async def startup():
    _run_migrations_if_needed()
    if settings.env.lower() in {"dev", "development"}:
        create_tables()
    ws_manager.attach(app.state.events, asyncio.get_running_loop(), settings.event_quiet_period_seconds)
    if settings.dispatch_enabled:
        # exactly one dispatcher per deployment: disable on extra replicas
        app.state.dispatch_task = asyncio.create_task(
            dispatch_loop(build_sender, app.state.events, app.state.cache)
        )
        logger.info(f"[startup] Dispatch loop started, interval={settings.dispatch_interval_seconds}s")

@app.on_event("shutdown")
async def shutdown():
    task = getattr(app.state, "dispatch_task", None)
    if task is not None:
        task.cancel()
