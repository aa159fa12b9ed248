from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from .database import engine, Base
from .routers import design_session

logger = logging.getLogger("aquadesign")

# Create tables (handles new tables but won't add columns to existing ones)
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="AquaDesign Orchestrator",
    description="Staged RAS design flow with live calculation previews",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(design_session.router, prefix="/api")


@app.get("/health")
def health():
    return {"status": "ok", "app": "aquadesign"}


@app.on_event("shutdown")
async def close_sessions():
    """Cancel outstanding preview timers and requests."""
    await design_session.close_registry()
    logger.info("Design sessions closed")
