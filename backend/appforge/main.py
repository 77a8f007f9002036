"""
AppForge API

HTTP surface for creating projects and queueing generation work. The
generation itself runs in Celery workers (see modules/projects/tasks.py).
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from appforge.core.config import settings
from appforge.core.database import close_db, init_db
from appforge.core.exceptions import AppForgeError, ResourceNotFoundError, ValidationError
from appforge.core.logging_config import logger
from appforge.core.middleware import RequestLoggingMiddleware
from appforge.api.v1.router import api_router
import appforge.models  # noqa: F401  registers every table on Base.metadata


async def validate_critical_config():
    """Fail fast when generation cannot work; warn about optional integrations"""
    missing = [name for name in ("DATABASE_URL", "ANTHROPIC_API_KEY") if not getattr(settings, name)]
    if missing:
        for name in missing:
            logger.critical(f"[Startup] {name} is not set")
        raise RuntimeError(f"Missing critical configuration: {', '.join(missing)}")

    if not settings.GITHUB_ACCESS_TOKEN:
        logger.warning("[Startup] GITHUB_ACCESS_TOKEN not set - repository push disabled")
    logger.info(
        f"[Startup] Config OK: branches={','.join(settings.FANOUT_STEP_TYPES)} "
        f"template={settings.SANDBOX_TEMPLATE} model={settings.CLAUDE_AGENT_MODEL}"
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} ({settings.ENVIRONMENT})")
    await validate_critical_config()
    await init_db()
    yield
    logger.info(f"Shutting down {settings.APP_NAME}")
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    description="AI app generator: iterative code generation into sandboxed previews",
    version="1.0.0",
    lifespan=lifespan,
    redirect_slashes=False,
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)


def _status_for(exc: AppForgeError) -> int:
    if isinstance(exc, ResourceNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(AppForgeError)
async def appforge_exception_handler(request: Request, exc: AppForgeError):
    logger.warning(f"{exc.code}: {exc.message}")
    return JSONResponse(status_code=_status_for(exc), content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "message": str(exc) if settings.DEBUG else "An error occurred",
        },
    )


@app.get("/health", tags=["Health"])
async def health_check():
    return {
        "status": "healthy",
        "app_name": settings.APP_NAME,
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
    }


app.include_router(api_router, prefix=f"/api/{settings.API_VERSION}")
