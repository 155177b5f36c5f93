"""
Obligations API Application Factory
"""

from typing import Optional

import uvicorn

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..engine import ObligationEngine
from ..exceptions import ConflictError, NotFoundError, ObligationError, ValidationError
from ..logging_config import get_logger, log_action
from .loans import router as loans_router, schedules_router as loan_schedules_router
from .services import router as services_router

logger = get_logger("obligations.api")

ERROR_STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
}


def status_code_for(error: ObligationError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_type):
            return status_code
    return 400


def create_app(engine: Optional[ObligationEngine] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Obligations Engine API",
        description="Loan amortization, recurring service billing and payment reconciliation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.engine = engine or ObligationEngine.from_config()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ObligationError)
    async def obligation_error_handler(request: Request, exc: ObligationError):
        status_code = status_code_for(exc)
        log_action(logger, "warning", exc.message, action="request_failed",
                   resource=f"{request.method} {request.url.path}",
                   extra={"code": exc.code, "status_code": status_code})
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={
            "status": "error",
            "code": ValidationError.code,
            "message": "Invalid request payload",
            "details": jsonable_encoder(exc.errors())
        })

    # Include routers
    app.include_router(loans_router, prefix="/api/loans", tags=["Loans"])
    app.include_router(loan_schedules_router, prefix="/api/loan-schedules", tags=["Loans"])
    app.include_router(services_router, prefix="/api/services", tags=["Services"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "obligations_api",
            "version": __version__
        }

    return app


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "core_obligations.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
