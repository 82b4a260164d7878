"""
Main FastAPI application entry point.
"""
import logging
from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from src.api import routes
from src.logging_config import setup_logging

# --- Setup Logging ---
setup_logging()

# --- Setup App ---
app = FastAPI(
    title="Graph Permission Usage Auditor",
    description="API for finding granted but unused application permissions.",
    version="0.1.0"
)

logger = logging.getLogger(__name__)

app.include_router(routes.router, prefix="/api/v1")


@app.get("/")
async def redirect_to_docs():
    """Redirect to the interactive API docs."""
    return RedirectResponse(url="/docs")
