# accessaudit/main.py
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api.router import router
from .config import get_settings
from .database import dispose_engine, init_db
from .services.logger import setup_logging
from .services.scheduler import shutdown_scheduler, start_scheduler

logger = logging.getLogger(__name__)

settings = get_settings()


# ---------------------------
# FastAPI App
# ---------------------------
app = FastAPI(title=settings.APP_NAME, version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


# ---------------------------
# Lifecycle
# ---------------------------
@app.on_event("startup")
def on_startup() -> None:
    setup_logging("DEBUG" if settings.AUDIT_DEBUG else settings.LOG_LEVEL)
    init_db()
    if settings.SCHEDULER_ENABLED:
        start_scheduler(settings)
    logger.info("%s %s started", settings.APP_NAME, __version__)


@app.on_event("shutdown")
def on_shutdown() -> None:
    shutdown_scheduler()
    dispose_engine()


@app.get("/healthz")
def healthz():
    return {"status": "ok", "version": __version__}
