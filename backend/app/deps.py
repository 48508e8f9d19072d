"""Service dependencies for route handlers."""

import logging
from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from jobflow.services import Services, sqlite_services

from .config import get_settings

logger = logging.getLogger(__name__)


@lru_cache
def get_services() -> Services:
    """Build the service graph once per process."""
    settings = get_settings()
    services = sqlite_services(
        settings.database_path,
        override_actor_ids=settings.override_actor_ids,
    )
    logger.info("Services ready (database=%s)", settings.database_path or "default")
    return services


# Type alias for dependency injection
AppServices = Annotated[Services, Depends(get_services)]
