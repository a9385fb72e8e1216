from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from cadence.api.router import api_router
from cadence.config import get_settings
from cadence.core.logging import setup_logging
from cadence.core.scheduler import JobRegistry

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    # Startup
    setup_logging()
    registry = JobRegistry()
    app.state.job_registry = registry
    await registry.start()
    yield
    # Shutdown
    await registry.stop()


app = FastAPI(
    title="Cadence",
    description="Weekly coaching delivery scheduler",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug else None,
    redoc_url="/api/redoc" if settings.debug else None,
)

# Include API routes
app.include_router(api_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint for load balancers."""
    return {"status": "healthy"}
