"""
Patchflow Backend - FastAPI Application Entry Point
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from routers import config, pipeline, projects
from services.command_sandbox import SandboxLimits
from services.config_manager import ConfigManager
from services.project_store import ProjectStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def sandbox_limits_from_config(section: dict) -> SandboxLimits:
    return SandboxLimits(
        max_output_length=section.get("maxOutputLength", 10000),
        timeout_seconds=section.get("timeoutMs", 5000) / 1000,
        max_args=section.get("maxArgs", 10),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - startup and shutdown logic"""
    # Startup: load configuration and create the project store
    logger.info("[Backend] Starting Patchflow Backend...")
    settings = ConfigManager.get_instance().get_config()
    logger.info("[Backend] ConfigManager initialized (provider: %s)", settings.get("provider"))

    app.state.project_store = ProjectStore(
        projects_root=settings.get("pipeline", {}).get("projectsRoot"),
        limits=sandbox_limits_from_config(settings.get("sandbox", {})),
    )
    logger.info("[Backend] ProjectStore initialized")

    yield
    # Shutdown: Cleanup
    logger.info("[Backend] Shutting down Patchflow Backend...")


app = FastAPI(
    title="Patchflow Backend",
    description="Diff-based code modification pipeline driven by LLM stages",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(pipeline.router, prefix="/api/pipeline", tags=["pipeline"])
app.include_router(projects.router, prefix="/api/projects", tags=["projects"])
app.include_router(config.router, prefix="/api/config", tags=["config"])


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "patchflow-backend"}


if __name__ == "__main__":
    import uvicorn

    server = ConfigManager.get_instance().get_config().get("server", {})
    uvicorn.run(app, host=server.get("host", "0.0.0.0"), port=server.get("port", 8000))
