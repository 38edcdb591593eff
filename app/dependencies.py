from typing import Annotated

import httpx
from fastapi import Depends, Request

from app.generation.registry import TaskRegistry
from app.generation.service import GenerationService


def get_task_registry(request: Request) -> TaskRegistry:
    """The registry created in the application lifespan."""
    registry: TaskRegistry = request.app.state.registry
    return registry


def get_generation_service(request: Request) -> GenerationService:
    service: GenerationService = request.app.state.generation_service
    return service


def get_http_client(request: Request) -> httpx.AsyncClient:
    """Shared outbound HTTP client, closed on shutdown."""
    client: httpx.AsyncClient = request.app.state.http_client
    return client


# Type aliases for dependency injection
Registry = Annotated[TaskRegistry, Depends(get_task_registry)]
Generation = Annotated[GenerationService, Depends(get_generation_service)]
HttpClient = Annotated[httpx.AsyncClient, Depends(get_http_client)]
