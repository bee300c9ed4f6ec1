from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.dependencies import shutdown_services
from api.errors import guide_error_handler
from api.routes.bookmarks import router as bookmarks_router
from api.routes.collections import router as collections_router
from api.routes.guides import router as guides_router
from api.routes.jobs import router as jobs_router
from guide_reader.indexing import GuideIndexError


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Flush pending positions before the process goes away.
    shutdown_services()


def create_app() -> FastAPI:
    app = FastAPI(title="Guide Reader API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(GuideIndexError, guide_error_handler)

    app.include_router(guides_router)
    app.include_router(bookmarks_router)
    app.include_router(collections_router)
    app.include_router(jobs_router)

    @app.get("/healthz")
    def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
