"""Request-scoped dependencies."""

from fastapi import Request

from govchat.service import ResilienceService


def get_service(request: Request) -> ResilienceService:
    """The process-wide ResilienceService, created in the app lifespan."""
    return request.app.state.service
