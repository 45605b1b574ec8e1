"""
Attendance Device Sync — HTTP Boundary
======================================
Thin FastAPI adapter between the HR dashboard and the sync orchestrator.

Usage:
    pip install attsync
    uvicorn attsync.server:app --host 0.0.0.0 --port 8080

Every response is a JSON object with ``success`` and ``message``; device or
ledger failures never leave this module as a bare traceback.
"""

import threading
from ipaddress import IPv4Address, IPv6Address
from typing import Optional, Union

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from attsync import config
from attsync.errors import AttSyncError, DeviceError
from attsync.ledger import Ledger
from attsync.log import log_error, log_info, log_ring, read_logs, setup_logging
from attsync.models import DeviceDescriptor
from attsync.orchestrator import SyncOrchestrator
from attsync.session import DeviceSession

# ─── Pydantic Models ──────────────────────────────────────────────────────────

class SyncRequest(BaseModel):
    device_id: str = Field(min_length=1)
    ip_address: Union[IPv4Address, IPv6Address]
    port: int = Field(default=config.DEFAULT_PORT, ge=1, le=65535)
    timeout_ms: int = Field(default=5000, gt=0, le=120000)

class TestDeviceRequest(BaseModel):
    ip_address: Union[IPv4Address, IPv6Address]
    port: int = Field(default=config.DEFAULT_PORT, ge=1, le=65535)
    timeout_ms: int = Field(default=5000, gt=0, le=120000)

class MappingRequest(BaseModel):
    device_user_id: str = Field(min_length=1)
    employee_id: str = Field(min_length=1)
    device_id: Optional[str] = None  # None = every terminal


def failure(status, message, **extra):
    return JSONResponse(status_code=status, content={"success": False, "message": message, **extra})


# ─── App Setup ────────────────────────────────────────────────────────────────

def create_app(ledger=None, transport=None):
    """Build the app. ``transport`` replaces the TCP connector (used by tests)."""
    setup_logging()
    app = FastAPI(title="Attendance Device Sync", version="1.0.0")
    app.state.ledger = ledger
    app.state.transport = transport
    app.state.active_runs = set()
    app.state.runs_lock = threading.Lock()

    def get_ledger():
        if app.state.ledger is None:
            app.state.ledger = Ledger()
        return app.state.ledger

    def new_orchestrator(timeout_ms=None):
        options = {}
        if timeout_ms:
            seconds = timeout_ms / 1000
            options = {"connect_timeout": seconds, "fetch_timeout": seconds}
        orch = SyncOrchestrator(get_ledger(), transport=app.state.transport, session_options=options)
        with app.state.runs_lock:
            app.state.active_runs.add(orch)
        return orch

    def finish(orch):
        with app.state.runs_lock:
            app.state.active_runs.discard(orch)

    # ─── Error handlers ──────────────────────────────────────────────────────

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}"
            for err in exc.errors()
        )
        return failure(400, f"Invalid request: {problems}")

    @app.exception_handler(AttSyncError)
    async def sync_error(request: Request, exc: AttSyncError):
        log_error(f"{request.url.path}: {type(exc).__name__}: {exc}")
        return failure(500, str(exc), failure=type(exc).__name__)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        log_error(f"{request.url.path}: unexpected {type(exc).__name__}: {exc}")
        return failure(500, "Failed to sync with biometric device")

    # ─── Sync ────────────────────────────────────────────────────────────────

    @app.post("/api/sync")
    def sync(req: SyncRequest):
        ledger = get_ledger()
        descriptor = ledger.register_device(req.device_id, str(req.ip_address), req.port)
        log_info(f"Sync requested for {descriptor.device_id} at {descriptor.host}:{descriptor.port}")

        orch = new_orchestrator(req.timeout_ms)
        try:
            result = orch.sync_devices([descriptor])[0]
        finally:
            finish(orch)

        if not result.success:
            return failure(500, result.message, failure=result.failure,
                           result=result.model_dump(mode="json"))
        return {
            "success": True,
            "message": result.message,
            "records": result.inserted,
            "deviceInfo": result.device_info.model_dump(mode="json") if result.device_info else {},
            "result": result.model_dump(mode="json"),
        }

    @app.post("/api/sync/all")
    def sync_all():
        orch = new_orchestrator()
        try:
            results = orch.sync_all()
        finally:
            finish(orch)
        inserted = sum(r.inserted for r in results)
        failed = [r.device_id for r in results if not r.success]
        message = f"{len(results) - len(failed)}/{len(results)} device(s) synced, {inserted} new record(s)"
        if failed:
            message += f"; failed: {', '.join(failed)}"
        return {
            "success": not failed,
            "message": message,
            "records": inserted,
            "results": [r.model_dump(mode="json") for r in results],
        }

    @app.post("/api/sync/cancel")
    def cancel_runs():
        with app.state.runs_lock:
            runs = list(app.state.active_runs)
        for orch in runs:
            orch.cancel()
        return {"success": True, "message": f"Cancellation sent to {len(runs)} run(s)"}

    # ─── Diagnostics ─────────────────────────────────────────────────────────

    @app.post("/api/test-device")
    def test_device(req: TestDeviceRequest):
        """Connect, read the info block, disconnect. Nothing is written."""
        descriptor = DeviceDescriptor(device_id="test", host=str(req.ip_address), port=req.port)
        session = DeviceSession(descriptor, transport=app.state.transport)
        try:
            session.connect(timeout=req.timeout_ms / 1000)
            info = session.fetch_info()
        except DeviceError as e:
            return failure(500, f"Failed to connect to device at {descriptor.host}:{descriptor.port}: {e}",
                           failure=type(e).__name__)
        finally:
            session.disconnect()
        return {
            "success": True,
            "message": f"Connected to {info.serial_number or descriptor.host}",
            "deviceInfo": info.model_dump(mode="json"),
        }

    @app.get("/api/devices")
    def list_devices():
        return {"success": True, "message": "",
                "devices": [d.model_dump(mode="json") for d in get_ledger().list_devices()]}

    @app.post("/api/mappings")
    def map_user(req: MappingRequest):
        get_ledger().map_device_user(req.device_id, req.device_user_id, req.employee_id)
        return {"success": True, "message": f"{req.device_user_id} -> {req.employee_id}"}

    @app.get("/api/status")
    def status():
        with app.state.runs_lock:
            active = len(app.state.active_runs)
        return {"success": True, "message": "ok", "active_runs": active,
                "devices": len(get_ledger().list_devices())}

    @app.get("/api/logs")
    def get_logs(after: int = 0, cat: str = "", level: str = ""):
        """Filters: after=index, cat=SYS|CMD|PROTO|SYNC, level=DEBUG|INFO|WARNING|ERROR"""
        return {"logs": read_logs(after, cat, level), "total": len(log_ring)}

    return app


app = create_app()


# ─── Entry Point ──────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8080)
