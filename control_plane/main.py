from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from control_plane.deps import build_control_plane
from control_plane.logging_ import configure_logging
from control_plane.routers import bots, candidates, health
from control_plane.settings import Settings


def create_app(settings: Settings | None = None, control_plane=None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="lifecycle-control-plane", version=settings.version)
    app.state.control_plane = control_plane or build_control_plane(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["health"])
    app.include_router(bots.router, prefix="/bots", tags=["bots"])
    app.include_router(candidates.router, prefix="/candidates", tags=["candidates"])

    @app.get("/")
    def root():
        return {"service": "lifecycle-control-plane", "version": settings.version}

    return app


app = create_app()
