"""
Taleforge Backend - FastAPI Application Entry Point
"""

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taleforge import __version__
from taleforge.api import game

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title="Taleforge",
    description="Phase-based turn orchestration for LLM interactive fiction",
    version=__version__,
)

# Configure CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(game.router, prefix="/api/game", tags=["game"])


@app.get("/")
async def root():
    """Health check endpoint"""
    return {"status": "ok", "name": "Taleforge", "version": __version__}
