"""
Check Treasury API Application Factory
"""

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .middleware import RequestIDMiddleware
from .checks import router as checks_router
from .checkbooks import router as checkbooks_router
from .treasury import router as treasury_router
from ..config import get_config
from ..errors import LockTimeout, TreasuryError, ValidationError, wrap_unexpected
from ..logging_config import get_logger, setup_logging


logger = get_logger("treasury.api")


def _error_response(request: Request, error: TreasuryError) -> JSONResponse:
    body = error.to_dict()
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        body["request_id"] = request_id
    headers = {"Retry-After": "1"} if isinstance(error, LockTimeout) else None
    return JSONResponse(status_code=error.http_status, content=body, headers=headers)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()
    setup_logging(config.log_level, "treasury", config.log_format, config.log_file)

    app = FastAPI(
        title="Check Treasury API",
        description="Check lifecycle, checkbook ranges, cash-flow projection and bank ledger mirror",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIDMiddleware)

    @app.exception_handler(TreasuryError)
    async def handle_treasury_error(request: Request, exc: TreasuryError):
        return _error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        field = None
        if errors and errors[0].get("loc"):
            field = str(errors[0]["loc"][-1])
        error = ValidationError(
            "Request body or parameters are invalid",
            field=field,
            details={"errors": [
                {"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg"), "type": e.get("type")}
                for e in errors
            ]},
        )
        return _error_response(request, error)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        error = wrap_unexpected(exc, f"{request.method} {request.url.path}", logger,
                                request_id=getattr(request.state, "request_id", None))
        return _error_response(request, error)

    app.include_router(checks_router, prefix="/checks", tags=["Checks"])
    app.include_router(checkbooks_router, prefix="/checkbooks", tags=["Checkbooks"])
    app.include_router(treasury_router, tags=["Treasury"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "check_treasury_api",
            "version": "1.0.0"
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Check Treasury API",
            "version": "1.0.0",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "checks": "/checks",
                "checkbooks": "/checkbooks",
                "cash-flow": "/cash-flow",
                "bank-ledger": "/bank-ledger/{bank_account_id}",
                "movements": "/movements",
                "audit": "/audit/integrity",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8091, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "check_treasury.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
