"""
Loan Servicing API Application Factory
"""

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .dependencies import ServicingSystem, get_servicing_system
from .loans import router as loans_router
from .schedules import router as schedules_router
from .payments import router as payments_router
from .interest import router as interest_router
from .. import __version__


def create_app(system: Optional[ServicingSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Servicing system to serve; the process-wide one when omitted
    """
    app = FastAPI(
        title="Loan Servicing API",
        description="Repayment schedules, interest accrual and payment allocation",
        version=__version__,
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

    if system is not None:
        app.dependency_overrides[get_servicing_system] = lambda: system

    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(schedules_router, prefix="/schedules", tags=["Schedules"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(interest_router, prefix="/interest", tags=["Interest"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_servicing_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Loan Servicing API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "schedules": "/schedules",
                "payments": "/payments",
                "interest": "/interest"
            }
        }

    return app


# Create the app instance for uvicorn
app = create_app()
