"""
Tax Collection API Application Factory
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from .visits import router as visits_router
from .tasks import router as tasks_router
from .accrual import router as accrual_router
from .penalty_rules import router as penalty_rules_router
from .audit import router as audit_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Tax Collection Arrears Engine API",
        description="Penalty accrual, field visit escalation and collector task queues",
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

    app.include_router(visits_router, prefix="/visits", tags=["Field Visits"])
    app.include_router(tasks_router, prefix="/tasks", tags=["Collector Tasks"])
    app.include_router(accrual_router, prefix="/accrual", tags=["Accrual"])
    app.include_router(penalty_rules_router, prefix="/penalty-rules", tags=["Penalty Rules"])
    app.include_router(audit_router, prefix="/audit", tags=["Audit"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "tax_collection_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Tax Collection Arrears Engine API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "visits": "/visits",
                "tasks": "/tasks",
                "accrual": "/accrual",
                "penalty-rules": "/penalty-rules",
                "audit": "/audit",
            }
        }

    return app


app = create_app()
