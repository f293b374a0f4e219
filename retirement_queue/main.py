"""
FastAPI application entry point
"""
import asyncio

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from retirement_queue import __version__
from retirement_queue.api.v1.api import api_router
from retirement_queue.api.v1.endpoints import health
from retirement_queue.core.config import settings
from retirement_queue.core.logger import logger
from retirement_queue.db.database import init_db
from retirement_queue.jobs.maintenance import shutdown_scheduler, start_scheduler
from retirement_queue.middleware.correlation import CorrelationMiddleware
from retirement_queue.services.container import Services, build_services
from retirement_queue.utils.exceptions import ConflictError, NotFoundError


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return JSONResponse(status_code=409, content={"detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid request", "errors": jsonable_errors(exc)},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
        for e in exc.errors()
    ]


def create_app(services: Services | None = None) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=__version__,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        openapi_url="/openapi.json" if settings.DEBUG else None,
    )
    app.state.services = services

    # ── Routers ───────────────────────────────────────────────────────────────
    app.include_router(api_router, prefix="/api/v1")
    app.include_router(health.router)

    # ── Middleware ────────────────────────────────────────────────────────────
    app.add_middleware(CorrelationMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-ID"],
    )

    register_exception_handlers(app)

    # ── Startup / Shutdown ────────────────────────────────────────────────────
    @app.on_event("startup")
    async def startup_event():
        if app.state.services is None:
            init_db()
            app.state.services = build_services()
        svc = app.state.services

        start = getattr(svc.cache, "start", None)
        if start is not None:
            start()

        app.state.worker_task = None
        app.state.scheduler = None
        if settings.WORKER_ENABLED:
            app.state.worker_task = asyncio.create_task(svc.worker.run_forever())
            app.state.scheduler = start_scheduler(svc.queue, svc.worker)
        logger.info(f"{settings.APP_NAME} API started")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info(f"{settings.APP_NAME} API shutdown")
        svc = app.state.services
        shutdown_scheduler(getattr(app.state, "scheduler", None))
        task = getattr(app.state, "worker_task", None)
        if task:
            svc.worker.stop()
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if svc is not None:
            await svc.aclose()

    return app


app = create_app()
