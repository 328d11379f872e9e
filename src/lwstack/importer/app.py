"""FastAPI application for bulk end device import.

This is the main entry point for the import API server.
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from .api.dependencies import close_stack_client, init_stack_client
from .api.router import router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Handles startup and shutdown events:
    - Startup: Initialize the stack client
    - Shutdown: Close the stack client
    """
    # Startup
    logger.info("Starting End Device Import API...")

    try:
        await init_stack_client()
    except Exception as e:
        logger.warning(f"Failed to initialize stack client: {e}")
        # Don't fail startup - /formats and /health work without a stack client

    yield

    # Shutdown
    logger.info("Shutting down End Device Import API...")
    await close_stack_client()


# Create FastAPI application
app = FastAPI(
    title="LoRaWAN End Device Import API",
    description="""
    API for bulk registration of LoRaWAN end devices.

    ## Features

    - **Formats**: List the supported import file formats
    - **Import**: Upload a file and register every end device in it
    - **Import Stream**: Same as import, with live progress over Server-Sent Events

    ## Workflow

    1. Pick a format from `GET /api/import/formats`
    2. Upload the file with the target application ID and optional fallbacks
    3. Follow the progress (`N of M (P% finished)`)
    4. Review the end devices that failed, grouped by reason
    """,
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS
cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "X-API-Key"],
)

# Include routers
app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "LoRaWAN End Device Import API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health")
async def health():
    """Global health check."""
    return {"status": "healthy"}


# Entry point for running with uvicorn
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.lwstack.importer.app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
    )
