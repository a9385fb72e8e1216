from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.core.database import get_db
from cadence.core.scheduler import JobRegistry

# Type aliases for dependency injection
DBSession = Annotated[AsyncSession, Depends(get_db)]


def get_job_registry(request: Request) -> JobRegistry:
    """The registry started by the application lifespan."""
    registry = getattr(request.app.state, "job_registry", None)
    return registry if registry is not None else JobRegistry()


Registry = Annotated[JobRegistry, Depends(get_job_registry)]
