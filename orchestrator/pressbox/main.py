from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
import logging

from .config import Settings, get_settings
from .routers import sites
from .services.site_orchestrator import EnvironmentOrchestrator

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(
    orchestrator: Optional[EnvironmentOrchestrator] = None,
    app_settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the API app.

    Args:
        orchestrator: Pre-built orchestrator (tests); built from settings at startup otherwise
        app_settings: Settings override (default: get_settings())
    """
    app_settings = app_settings or settings
    app = FastAPI(title="PressBox Site Orchestrator API")
    app.state.orchestrator = orchestrator

    # The desktop shell talks to us from a local origin on an arbitrary port
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup():
        if app.state.orchestrator is None:
            app.state.orchestrator = EnvironmentOrchestrator.from_settings(app_settings)
        result = await app.state.orchestrator.initialize()
        if result.success:
            logger.info(
                f"Orchestrator ready ({len(result.data.get('adopted', []))} running, "
                f"{len(result.data.get('drifted', []))} drifted)"
            )
        else:
            logger.error(f"Startup reconciliation failed: {result.message}")

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.orchestrator is not None:
            await app.state.orchestrator.shutdown()

    app.include_router(sites.router)
    app.include_router(sites.database_servers_router)
    app.include_router(sites.hosts_router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "pressbox-orchestrator"}

    @app.get("/api/config")
    async def get_app_config():
        """Public configuration the shell needs to render site URLs."""
        return {
            "port_range": [app_settings.port_range_start, app_settings.port_range_end],
            "non_admin_mode": app_settings.non_admin_mode,
            "default_environment": app_settings.default_environment or None,
        }

    return app


app = create_app()


def run():
    """Console entry point: serve the API on the loopback interface."""
    import uvicorn

    uvicorn.run("pressbox.main:app", host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())
