"""FastAPI dependencies."""

from fastapi import Depends, Header, HTTPException, Request, status

from marketpulse.services import Services


def get_services(request: Request) -> Services:
    """Dependency returning the service container attached to the app."""
    return request.app.state.services


async def require_admin_api_key(
    x_admin_api_key: str = Header(..., alias="X-Admin-API-Key"),
    services: Services = Depends(get_services),
) -> None:
    """
    Dependency to require admin API key for protected endpoints.

    Args:
        x_admin_api_key: Admin API key from X-Admin-API-Key header

    Raises:
        HTTPException: 503 if no key is configured, 403 if invalid
    """
    if not services.config.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured"
        )

    if x_admin_api_key != services.config.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )
