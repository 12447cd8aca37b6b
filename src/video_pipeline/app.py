"""FastAPI application for video-pipeline."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import install_error_handlers
from .api import router as api_router
from .services import PipelineServices


def create_app(services: PipelineServices | None = None) -> FastAPI:
    """
    Build the application.

    Services are constructed in the lifespan unless provided, and are
    reachable from handlers through ``app.state.services``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan."""
        app.state.services = services or PipelineServices.from_config()
        await app.state.services.start()
        yield
        await app.state.services.stop()

    app = FastAPI(
        title="Video Pipeline",
        description="Video transcoding, job orchestration and adaptive streaming",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(api_router, prefix="/api", tags=["API"])
    install_error_handlers(app)
    return app


app = create_app()


def main():
    """Run the server."""
    import uvicorn

    uvicorn.run(
        "video_pipeline.app:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
    )


if __name__ == "__main__":
    main()
