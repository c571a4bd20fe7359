import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from boardcache.core.config import get_settings
from boardcache.core.exceptions import (
    AggregateNotFound,
    BoardCacheError,
    CacheUnavailable,
    InvalidMutation,
    MutationFailed,
    MutationTimeout,
)
from boardcache.core.runtime import Runtime, build_runtime
from boardcache.routers import admin, boards

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    InvalidMutation: status.HTTP_422_UNPROCESSABLE_ENTITY,
    AggregateNotFound: status.HTTP_404_NOT_FOUND,
    MutationTimeout: status.HTTP_504_GATEWAY_TIMEOUT,
    MutationFailed: status.HTTP_502_BAD_GATEWAY,
    CacheUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def board_cache_error_handler(request: Request, exc: BoardCacheError):
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "retryable": exc.retryable},
    )


def create_app(runtime: Runtime | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "runtime", None) is None
        if owned:
            settings = get_settings()
            logging.basicConfig(level=settings.log_level)
            app.state.runtime = await build_runtime(settings)
        app.state.runtime.start()
        logger.info("boardcache started")
        yield
        if owned:
            await app.state.runtime.close()
        else:
            await app.state.runtime.guard.stop()

    app = FastAPI(
        title="Board Cache API",
        description="Memory-bounded board cache with optimistic, per-board serialized mutations",
        swagger_ui_parameters={"displayRequestDuration": True},
        version="1.0.0",
        lifespan=lifespan,
    )
    if runtime is not None:
        app.state.runtime = runtime

    app.add_exception_handler(BoardCacheError, board_cache_error_handler)

    # Include routers
    app.include_router(admin.router)
    app.include_router(boards.router)

    @app.get("/")
    async def root():
        return {
            "message": "Welcome to Board Cache API",
            "docs": "/docs",
            "version": "1.0.0",
        }

    return app


app = create_app()
