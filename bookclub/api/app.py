"""FastAPI application factory for the entitlements API."""

from typing import Optional

from fastapi import FastAPI, Request

from bookclub.api.routes.entitlements import router as entitlements_router
from bookclub.entitlements.middleware import SessionAuthenticator
from bookclub.entitlements.service import EntitlementService
from bookclub.platform.errors import AppError, ErrorHandlerMiddleware, error_response, get_correlation_id


def create_app(
    service: Optional[EntitlementService] = None,
    authenticator: Optional[SessionAuthenticator] = None,
) -> FastAPI:
    app = FastAPI(title="Book Club Entitlements")
    app.state.entitlements = service
    app.state.authenticator = authenticator

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        return error_response(exc, get_correlation_id(request))

    app.add_middleware(ErrorHandlerMiddleware)
    app.include_router(entitlements_router, prefix="/api")

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app
