from __future__ import annotations

from fastapi import HTTPException, Request

from deepresearch.container import ResearchServices


def get_services(request: Request) -> ResearchServices:
    """Return the services wired by the application lifespan."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Research services are not available")
    return services
