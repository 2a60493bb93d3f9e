"""
Loan Pricing API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .deps import PricingSystem, get_system
from .fee_configs import router as fee_configs_router
from .fx_rates import router as fx_rates_router
from .loans import router as loans_router
from .snapshots import router as snapshots_router
from ..config import get_config
from ..logging_config import setup_logging


VERSION = "1.0.0"


def create_app(system: Optional[PricingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Pricing API",
        description="Trade-finance loan pricing, fees, splitting and portfolio snapshots",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or PricingSystem()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(snapshots_router, prefix="/snapshots", tags=["Snapshots"])
    app.include_router(fee_configs_router, prefix="/fee-configs", tags=["Fee Configs"])
    app.include_router(fx_rates_router, prefix="/fx-rates", tags=["FX Rates"])

    @app.on_event("shutdown")
    async def close_storage():
        await app.state.system.close()

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_pricing_api",
            "version": VERSION
        }

    @app.get("/audit/verify", tags=["Audit"])
    async def verify_audit_chain(system: PricingSystem = Depends(get_system)):
        """Recompute the audit hash chain"""
        return await system.audit_trail.verify_integrity()

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "loan_pricing.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
