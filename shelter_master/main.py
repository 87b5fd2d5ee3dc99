"""
Shelter Master - Operations API
===============================
REST + WebSocket surface over the polling and control engine:
unit data and health, command execution, command log, polling control,
queue status and mapping diagnostics.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn

import config
from shelter_master import __version__
from shelter_master.control import BatchCommand
from shelter_master.engine import ShelterEngine
from shelter_master.errors import (
    CommandLogNotFoundError,
    CommandValidationError,
    LogAlreadyFinalizedError,
    MappingError,
    ShelterError,
    TransactionError,
)
from shelter_master.mapping import load_site_mapping
from shelter_master.storage import CommandStatus

logging.basicConfig(
    level=getattr(logging, config.LOGGING_CONFIG["level"].upper()),
    format=config.LOGGING_CONFIG["format"]
)
logger = logging.getLogger(__name__)

# ============================================================================
# Pydantic Models
# ============================================================================

class CommandRequest(BaseModel):
    action: str
    value: Optional[Any] = None
    request_id: Optional[str] = None

class BatchRequest(BaseModel):
    commands: List[CommandRequest]

class IntervalRequest(BaseModel):
    interval_ms: int

class EnabledRequest(BaseModel):
    enabled: bool

# ============================================================================
# Error Mapping
# ============================================================================

def status_code_for(error: ShelterError) -> int:
    if isinstance(error, CommandLogNotFoundError):
        return 404
    if isinstance(error, LogAlreadyFinalizedError):
        return 409
    if isinstance(error, (MappingError, CommandValidationError)):
        return 400
    if isinstance(error, TransactionError):
        return 502
    return 500

# ============================================================================
# Application Setup
# ============================================================================

def create_app(engine: Optional[ShelterEngine] = None) -> FastAPI:
    """
    Build the FastAPI app around an engine.

    Args:
        engine: Pre-built engine (tests inject one with a simulated transport);
            defaults to ShelterEngine.from_config()
    """
    engine = engine or ShelterEngine.from_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.start()
        yield
        await engine.stop()

    app = FastAPI(title="Shelter Master", version=__version__, lifespan=lifespan)
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.API_CONFIG["cors_origins"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ShelterError)
    async def shelter_error_handler(request: Request, exc: ShelterError):
        return JSONResponse(status_code=status_code_for(exc), content=exc.to_dict())

    async def get_unit_or_404(device_id: str, unit_id: str):
        unit = await engine.unit_store.get_unit(device_id, unit_id)
        if not unit:
            raise HTTPException(status_code=404, detail=f"Unit {device_id}/{unit_id} not found")
        return unit

    # ========================================================================
    # Health
    # ========================================================================

    @app.get("/health")
    async def health_check():
        return {
            **engine.get_health(),
            "version": __version__,
            "timestamp": datetime.utcnow().isoformat()
        }

    # ========================================================================
    # Units
    # ========================================================================

    @app.get("/units")
    async def list_units():
        units = await engine.unit_store.list_units()
        return {"units": [u.to_dict() for u in units], "total": len(units)}

    @app.get("/units/{device_id}/{unit_id}")
    async def get_unit(device_id: str, unit_id: str):
        unit = await get_unit_or_404(device_id, unit_id)
        return unit.to_dict()

    # ========================================================================
    # Control
    # ========================================================================

    @app.post("/units/{device_id}/{unit_id}/commands")
    async def execute_command(device_id: str, unit_id: str, request: CommandRequest):
        unit = await get_unit_or_404(device_id, unit_id)
        outcome = await engine.executor.execute(unit, request.action, request.value,
                                                request_id=request.request_id)
        return outcome.to_dict()

    @app.post("/units/{device_id}/{unit_id}/commands/batch", status_code=202)
    async def submit_batch(device_id: str, unit_id: str, request: BatchRequest):
        unit = await get_unit_or_404(device_id, unit_id)
        if not request.commands:
            raise HTTPException(status_code=400, detail="Batch requires at least one command")
        commands = [BatchCommand(c.action, c.value, c.request_id) for c in request.commands]
        request_ids = await engine.batch_runner.submit_batch(unit, commands)
        return {
            "accepted": len(request_ids),
            "request_ids": request_ids,
            "strategy": engine.batch_runner.strategy.name,
        }

    # ========================================================================
    # Command Log
    # ========================================================================

    @app.get("/commands")
    async def list_commands(device_id: Optional[str] = None,
                            unit_id: Optional[str] = None,
                            status: Optional[CommandStatus] = None,
                            limit: int = Query(100, ge=1, le=1000)):
        entries = await engine.log_store.list(device_id, unit_id, status, limit)
        return {"commands": [e.to_dict() for e in entries], "count": len(entries)}

    @app.get("/commands/stats")
    async def command_stats():
        return await engine.log_store.get_stats()

    @app.get("/commands/{request_id}")
    async def get_command(request_id: str):
        entry = await engine.log_store.get(request_id)
        if not entry:
            raise CommandLogNotFoundError(request_id)
        return entry.to_dict()

    # ========================================================================
    # Polling
    # ========================================================================

    @app.get("/polling/status")
    async def polling_status():
        return engine.scheduler.get_status()

    @app.put("/polling/interval")
    async def set_polling_interval(request: IntervalRequest):
        try:
            applied = engine.scheduler.set_interval(request.interval_ms)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {
            "interval_ms": request.interval_ms,
            "applied": "immediately" if applied else "next_cycle",
        }

    @app.put("/polling/enabled")
    async def set_polling_enabled(request: EnabledRequest):
        engine.scheduler.set_enabled(request.enabled)
        return {"enabled": engine.scheduler.enabled}

    @app.post("/polling/trigger", status_code=202)
    async def trigger_polling():
        started = engine.scheduler.trigger()
        return {"triggered": started, "cycleRunning": engine.scheduler.cycle_running}

    # ========================================================================
    # Queue & Mapping Diagnostics
    # ========================================================================

    @app.get("/queue/status")
    async def queue_status():
        return engine.command_queue.get_status()

    @app.get("/mappings/{site_id}/validation")
    async def validate_mapping(site_id: str):
        site = load_site_mapping(site_id)
        if site is None:
            raise HTTPException(status_code=404, detail=f"Site {site_id} has no port mapping")
        errors = site.validate()
        conflicts = site.find_port_conflicts()
        return {
            "site": site_id,
            "valid": not errors and not conflicts,
            "errors": errors,
            "conflicts": conflicts,
            "deviceTypes": site.get_device_types(),
        }

    # ========================================================================
    # WebSocket
    # ========================================================================

    @app.websocket("/ws/events")
    async def websocket_events(websocket: WebSocket):
        await engine.broadcaster.connect(websocket)
        try:
            while True:
                data = await websocket.receive_text()
                if data == "ping":
                    await engine.broadcaster.send_personal_message({"type": "pong"}, websocket)
        except WebSocketDisconnect:
            engine.broadcaster.disconnect(websocket)
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
            engine.broadcaster.disconnect(websocket)

    return app


app = create_app()

# ============================================================================
# Main
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "shelter_master.main:app",
        host="0.0.0.0",
        port=config.API_CONFIG["rest_port"],
        log_level=config.LOGGING_CONFIG["level"].lower()
    )
