"""HTTP layer: FastAPI application, request guards and error translation."""

from tenantauth.api.main import create_app

__all__ = ["create_app"]
