"""FastAPI application factory for the chama gateway"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from chama_gateway.api.dependencies import get_request_id
from chama_gateway.api.errors import to_http_error
from chama_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from chama_gateway.api.v1 import loans, payments
from chama_gateway.config import settings
from chama_gateway.domain.exceptions import DomainException
from chama_gateway.infrastructure.observability.logging import setup_logging

setup_logging(settings.log_level)


async def domain_error_handler(request: Request, exc: DomainException) -> JSONResponse:
    """Last resort for domain errors that escape a route's own translation"""
    error = to_http_error(exc, get_request_id(request))
    return JSONResponse(status_code=error.status_code, content={"detail": error.detail})


def create_app() -> FastAPI:
    app = FastAPI(
        title="Chama Gateway",
        description="Savings-group lending with M-Pesa contributions, disbursements and webhook reconciliation",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Last added runs first: request id must exist before metrics log it
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_exception_handler(DomainException, domain_error_handler)

    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(loans.router, prefix="/v1/loans", tags=["loans"])
    app.include_router(payments.router, prefix="/v1/payments", tags=["payments"])

    logging.info(
        "Chama gateway configured",
        extra={"service": settings.service_name, "mpesa_base_url": settings.mpesa_api_base_url},
    )
    return app


app = create_app()
