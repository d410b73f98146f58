from __future__ import annotations

import json
import logging
import os
import re
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .acquire import remove_file_quietly
from .config import HostcoreConfig
from .deployer import Deployer
from .errors import HostcoreError, InvalidInput, NotFound
from .events import EventStore
from .log_config import setup_logging
from .models import ApplicationRecord
from .network import PortAllocator
from .platform import normalize_app_name
from .routes import RouteConfigWriter
from .security import AnomalyLogger, StoreQuotaOracle
from .shell import ShellSession
from .store import APPLICATIONS, JsonRecordStore, RecordStore
from .supervisor import ProcessSupervisor

logger = logging.getLogger("hostcore.api")

UPLOAD_CHUNK = 1024 * 1024
TERMINAL_LOG_LINES = 50

_UPLOAD_NAME_RE = re.compile(r"[^A-Za-z0-9._-]")


class DeployGitRequest(BaseModel):
    repo_url: str
    app_name: str


class HostingService:
    """Wires the store, allocator, routes, supervisor and deployer together."""

    def __init__(
        self,
        config: HostcoreConfig,
        store: Optional[RecordStore] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        deployer: Optional[Deployer] = None,
    ):
        self.config = config
        config.ensure_directories()
        self.store = store if store is not None else JsonRecordStore(config.records_path)
        self.events = supervisor.events if supervisor is not None else EventStore()
        self.ports = PortAllocator(
            ledger_path=config.ports_ledger_path,
            port_min=config.port_min,
            port_max=config.port_max,
        )
        self.routes = RouteConfigWriter(config.route_config_dir)
        self.supervisor = supervisor or ProcessSupervisor(
            self.store,
            events=self.events,
            restart_grace=config.restart_grace,
            stop_timeout=config.stop_timeout,
        )
        self.oracle = StoreQuotaOracle(self.store, default_max_apps=config.default_max_apps)
        self.anomalies = AnomalyLogger(config.anomaly_log_path)
        self.deployer = deployer or Deployer(
            config,
            self.store,
            self.ports,
            self.routes,
            self.supervisor,
            oracle=self.oracle,
            anomalies=self.anomalies,
            events=self.events,
        )

    def startup(self) -> None:
        self.supervisor.reconcile()

    async def shutdown(self) -> None:
        await self.supervisor.shutdown()

    def check_name(self, name: str) -> Dict[str, Any]:
        sanitized = normalize_app_name(name)
        available = bool(sanitized) and not self.deployer.is_name_taken(sanitized) \
            and not self.deployer.root_for(sanitized).exists()
        return {"name": name, "sanitized": sanitized, "available": available}

    async def save_upload(self, upload: UploadFile) -> Path:
        original = Path(upload.filename or "upload.zip").name
        safe = _UPLOAD_NAME_RE.sub("_", original) or "upload.zip"
        dest = self.config.uploads_dir / f"{uuid.uuid4().hex}-{safe}"
        limit = self.config.max_upload_mb * 1024 * 1024
        size = 0
        try:
            with open(dest, "wb") as f:
                while True:
                    chunk = await upload.read(UPLOAD_CHUNK)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > limit:
                        raise InvalidInput(f"Archive larger than {self.config.max_upload_mb} MB")
                    f.write(chunk)
        except HostcoreError:
            remove_file_quietly(dest)
            raise
        if size == 0:
            remove_file_quietly(dest)
            raise InvalidInput("Uploaded archive is empty")
        return dest


def create_api(*, hosting: HostingService, settings: HostcoreConfig) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        hosting.startup()
        yield
        await hosting.shutdown()

    app = FastAPI(title="hostcore-api", version=__version__, lifespan=lifespan)

    def require_token(x_hostcore_token: Optional[str] = Header(default=None)) -> None:
        if not settings.require_token:
            return
        if not settings.token:
            raise HTTPException(status_code=500, detail="api token not configured")
        if not x_hostcore_token or x_hostcore_token != settings.token:
            raise HTTPException(status_code=401, detail="unauthorized")

    @app.exception_handler(HostcoreError)
    async def hostcore_error_handler(request, exc: HostcoreError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    deployer = hosting.deployer
    auth = [Depends(require_token)]

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"ok": True}

    @app.get("/api/check-name/{name}", dependencies=auth)
    async def check_name(name: str) -> Dict[str, Any]:
        return hosting.check_name(name)

    @app.post("/api/deploy/git", status_code=201, dependencies=auth)
    async def deploy_git(
        req: DeployGitRequest,
        x_caller_id: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        result = await deployer.deploy_from_remote_reference(req.repo_url, req.app_name, caller=x_caller_id)
        return result.to_dict()

    @app.post("/api/deploy/archive", status_code=201, dependencies=auth)
    async def deploy_archive(
        archive: UploadFile = File(...),
        app_name: str = Form(...),
        x_caller_id: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        path = await hosting.save_upload(archive)
        try:
            result = await deployer.deploy_from_archive(path, app_name, caller=x_caller_id)
        finally:
            remove_file_quietly(path)
        return result.to_dict()

    @app.get("/api/apps", dependencies=auth)
    async def list_apps() -> Dict[str, Any]:
        return {"apps": deployer.list_applications()}

    @app.get("/api/apps/{name}", dependencies=auth)
    async def get_app(name: str) -> Dict[str, Any]:
        return {"app": deployer.get_application(name)}

    @app.post("/api/apps/{name}/start", dependencies=auth)
    async def start_app(name: str) -> Dict[str, Any]:
        record = await deployer.start(name)
        return {"success": True, "app": record.to_dict()}

    @app.post("/api/apps/{name}/stop", dependencies=auth)
    async def stop_app(name: str) -> Dict[str, Any]:
        record = await deployer.stop(name)
        return {"success": True, "app": record.to_dict()}

    @app.post("/api/apps/{name}/restart", dependencies=auth)
    async def restart_app(name: str) -> Dict[str, Any]:
        record = await deployer.restart(name)
        return {"success": True, "app": record.to_dict()}

    @app.get("/api/apps/{name}/status", dependencies=auth)
    async def app_status(name: str) -> Dict[str, Any]:
        return deployer.status(name)

    @app.delete("/api/apps/{name}", dependencies=auth)
    async def delete_app(name: str) -> Dict[str, Any]:
        return await deployer.delete_application(name)

    @app.get("/api/apps/{name}/logs", dependencies=auth)
    async def app_logs(
        name: str,
        type: str = Query(default="out"),
        lines: int = Query(default=100, ge=1, le=10000),
    ) -> Dict[str, Any]:
        return {"name": name, "type": type, "logs": deployer.get_logs(name, type, lines)}

    @app.get("/api/apps/{name}/route", dependencies=auth)
    async def app_route(name: str) -> Dict[str, Any]:
        deployer.get_application(name)
        text = hosting.routes.read(name)
        if text is None:
            raise NotFound(f"No route config for {name}")
        return {"name": normalize_app_name(name), "config": text}

    @app.get("/api/ports", dependencies=auth)
    async def ports() -> Dict[str, Any]:
        return hosting.ports.to_dict()

    @app.websocket("/ws/terminal/{name}")
    async def terminal(websocket: WebSocket, name: str, token: Optional[str] = None) -> None:
        if settings.require_token and (not settings.token or token != settings.token):
            await websocket.close(code=4401)
            return

        canonical = normalize_app_name(name)
        data = hosting.store.find_one(APPLICATIONS, {"name": canonical}) if canonical else None
        await websocket.accept()
        if data is None:
            await websocket.send_json({"type": "error", "content": f"Application not found: {name}\r\n"})
            await websocket.close(code=4404)
            return

        record = ApplicationRecord.from_dict(data)
        session = ShellSession(
            canonical,
            record.source_path,
            websocket.send_json,
            anomalies=hosting.anomalies,
            user_id=record.owner,
        )
        await session.open(
            out_tail=deployer.get_logs(canonical, "out", TERMINAL_LOG_LINES),
            error_tail=deployer.get_logs(canonical, "error", TERMINAL_LOG_LINES),
        )
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    await websocket.send_json({"type": "error", "content": "Invalid message\r\n"})
                    continue
                await session.handle_message(message)
        except WebSocketDisconnect:
            logger.debug(f"[{canonical}] Terminal disconnected")
        finally:
            await session.close()

    return app


def create_app() -> FastAPI:
    settings = HostcoreConfig.from_env()
    setup_logging(settings.log_dir)
    hosting = HostingService(settings)
    return create_api(hosting=hosting, settings=settings)


def main() -> None:
    import uvicorn

    app = create_app()
    host = os.environ.get("HOSTCORE_HOST", "127.0.0.1")
    port = int(os.environ.get("HOSTCORE_PORT", "5000"))
    uvicorn.run(app, host=host, port=port)
