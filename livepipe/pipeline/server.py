"""
LivePipe Server

Local FastAPI service hosting the pipeline.

Endpoints:
- GET /health: Health check
- GET /status: Running state, effective config, last config event
- POST /trigger: One-shot hotkey pass over the latest frames
- GET /tasks: Recorded actionable tasks
- POST /tasks/{index}/complete: Mark a task done

The poll loop starts with the app (unless capture.mode is "hotkey") and stops
cooperatively on shutdown.
"""

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException

from ..common.config import ConfigStore, ensure_config_file, ensure_directories
from .cycle_log import configure_logging
from .runner import IntentPipeline

logger = logging.getLogger("livepipe.pipeline.server")

DEFAULT_PORT = 3939

# Global state
config_store: Optional[ConfigStore] = None
pipeline: Optional[IntentPipeline] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load config and start the pipeline"""
    global config_store, pipeline

    logger.info("Starting up...")
    ensure_directories()
    path = ensure_config_file()

    config_store = ConfigStore(path)
    config_store.load()
    logger.info("Loaded config from %s", path)

    pipeline = IntentPipeline(config_store)
    await pipeline.start()
    logger.info("Ready")

    yield

    logger.info("Shutting down...")
    await pipeline.stop()
    await pipeline.close()
    pipeline = None


app = FastAPI(
    title="LivePipe",
    description="Screen-text intent detection and notification",
    version="0.1.0",
    lifespan=lifespan,
)


def _require_pipeline() -> IntentPipeline:
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "livepipe",
        "initialized": pipeline is not None,
        "running": pipeline.running if pipeline else False,
    }


@app.get("/status")
async def status():
    status = _require_pipeline().status()
    status["timestamp"] = datetime.now().isoformat()
    return status


@app.post("/trigger")
async def trigger():
    """Hotkey entry point"""
    return await _require_pipeline().trigger_once()


@app.get("/tasks")
async def list_tasks():
    entries = _require_pipeline().task_log.entries
    return {"tasks": [{"index": i, **asdict(e)} for i, e in enumerate(entries)]}


@app.post("/tasks/{index}/complete")
async def complete_task(index: int):
    if not _require_pipeline().task_log.mark_complete(index):
        raise HTTPException(status_code=404, detail="Task not found")
    return {"status": "completed", "index": index}


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the LivePipe server"""
    import uvicorn

    configure_logging()
    port = int(os.getenv("LIVEPIPE_PORT", DEFAULT_PORT))

    logger.info("Starting server on port %d", port)
    uvicorn.run(
        "livepipe.pipeline.server:app",
        host="127.0.0.1",
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
