"""
Cooperative Ledger API Application Factory
"""

import uuid
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import get_config
from ..errors import TransactionIntegrityViolation
from ..logging_config import correlation_context, get_logger
from ..system import CooperativeSystem
from .members import router as members_router
from .accounts import router as accounts_router
from .transactions import router as transactions_router
from .loans import router as loans_router
from .withdrawals import router as withdrawals_router
from .savings import router as savings_router
from .postings import router as postings_router
from .reports import router as reports_router


logger = get_logger("scms.api")


def create_app(system: Optional[CooperativeSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title=get_config().api_title,
        description="Ledger and posting core of a cooperative society",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or CooperativeSystem()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        correlation_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        with correlation_context(correlation_id):
            response = await call_next(request)
        response.headers["X-Request-Id"] = correlation_id
        return response

    app.include_router(members_router,prefix="/members", tags=["Members"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(withdrawals_router, prefix="/withdrawals", tags=["Withdrawals"])
    app.include_router(savings_router, prefix="/savings", tags=["Savings"])
    app.include_router(postings_router, prefix="/postings", tags=["Postings"])
    app.include_router(reports_router, prefix="/reports", tags=["Reports"])

    @app.exception_handler(TransactionIntegrityViolation)
    async def integrity_violation_handler(request: Request, exc: TransactionIntegrityViolation):
        logger.critical("Ledger integrity violation on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Ledger integrity violation; the operation was rolled back"})

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "cooperative_ledger_api",
            "version": "1.0.0"
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": get_config().api_title,
            "version": "1.0.0",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "members": "/members",
                "accounts": "/accounts",
                "transactions": "/transactions",
                "loans": "/loans",
                "withdrawals": "/withdrawals",
                "savings": "/savings",
                "postings": "/postings",
                "reports": "/reports",
            }
        }

    return app
