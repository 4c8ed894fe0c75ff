# planche/main.py
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from concurrent.futures import ThreadPoolExecutor
import threading
import logging
import os

from planche.config.settings import settings
from planche.delivery.api.planche import router
from planche.domain.planche_service import PlancheService

logging.getLogger("PIL").setLevel(logging.WARNING)
logger = logging.getLogger("uvicorn.error")

# --- Lazy service bootstrap state ---
_service_lock = threading.Lock()

def _ensure_service(app: FastAPI) -> None:
    with _service_lock:  # Always acquire lock first
        if getattr(app.state, "planche_service", None) is not None:
            return
        logger.info("Initialising PlancheService (lazy-init)...")
        app.state.planche_service = PlancheService(
            cpu_executor=app.state.cpu_executor,
            io_executor=app.state.io_executor,
        )
        logger.info("Service initialisation done.")

@asynccontextmanager
async def lifespan(app: FastAPI):
    max_workers = min(4, os.cpu_count() or 1)  # Conservative limit
    app.state.cpu_executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="planche-cpu")
    app.state.io_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="planche-io")
    app.state.planche_service = None
    logger.info(f"Service '{settings.PROJECT_NAME}' starting (mode: {settings.ENVIRONMENT}).")
    logger.info(f"CPU ThreadPoolExecutor created with {max_workers} workers.")
    yield
    logger.info("Shutting down executors...")
    app.state.cpu_executor.shutdown(wait=True)
    app.state.io_executor.shutdown(wait=True)
    logger.info("Service stopped.")

app = FastAPI(
    title="Planche Compositor Service",
    description="Renders school photo sheets (planches) from a student portrait and a layout template",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_HOSTS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Lazy-load only for API routes
@app.middleware("http")
async def lazy_boot(request: Request, call_next):
    if request.url.path.startswith(settings.API_V1_STR):
        _ensure_service(request.app)
    return await call_next(request)

app.include_router(router, prefix=settings.API_V1_STR)

@app.get("/")
async def root():
    return {"message": "Planche Compositor Service", "version": "1.0.0", "status": "ok"}

@app.get("/health")
async def health_check(request: Request):
    ready = getattr(request.app.state, "planche_service", None) is not None
    return {"status": "ok", "service": settings.PROJECT_NAME, "service_ready": ready}
