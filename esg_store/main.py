"""Main FastAPI application entry point."""
import logging

from fastapi import FastAPI

from esg_store.api.routes import router
from esg_store.config import get_settings
from esg_store.database import Base, engine
# Import models to register them with SQLAlchemy Base
from esg_store.models.audit import AuditEntry  # noqa: F401
from esg_store.models.domain import (  # noqa: F401
    EnvironmentalActivity,
    GovernancePractices,
    Organisation,
    ReportingPeriod,
    SocialIndicators,
)

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

# Create FastAPI app
app = FastAPI(
    title="ESG Store - Versioned Disclosure Records",
    description="Append-only revisioned storage for sustainability data with a hash-verified audit ledger.",
    version="0.1.0",
)

# Include API routes
app.include_router(router, prefix="/api", tags=["ESG"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "ESG Store"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
