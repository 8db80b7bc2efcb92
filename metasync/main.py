"""MetaSync — FastAPI Application Entry Point.

Serves sync run history for dashboard collaborators.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from metasync.database import init_db, test_connection
from metasync.api.sync_routes import router as sync_router
from metasync.core.logging import get_logger

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("🚀 MetaSync starting up...")
    if test_connection():
        try:
            init_db()
        except Exception as e:
            logger.error(f"❌ Table creation failed: {e}")
    else:
        logger.error("❌ Database NOT connected — endpoints will fail")
    yield
    logger.info("MetaSync shut down")


app = FastAPI(
    title="MetaSync",
    description="Meta Marketing API synchronization engine — sync run history.",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(sync_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "metasync",
        "version": "1.0.0",
    }
