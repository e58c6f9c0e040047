"""Main FastAPI application entry point."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from common.config import get_settings
from common.db import engine, Base, SessionLocal
from services.claims import routes as claims_routes
from services.glosas import routes as tariff_routes
from services.glosas.tariffs import seed_tariffs
from services.rules import routes as rules_routes
import logging

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

# Create database tables
try:
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")
except Exception as e:
    logger.warning(f"Database table creation note: {e}")

# Seed the contract tariff on a fresh database
try:
    db = SessionLocal()
    try:
        seed_tariffs(db)
    finally:
        db.close()
except Exception as e:
    logger.warning(f"Tariff seeding note: {e}")

app = FastAPI(
    title="Claims Audit Liquidation Engine",
    description="Audits health-service claims, computes glosas and liquidates payable values",
    version="1.0.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(claims_routes.router)
app.include_router(rules_routes.router)
app.include_router(tariff_routes.router)


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "service": "Claims Audit Liquidation Engine",
        "version": "1.0.0",
        "status": "operational",
    }


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
