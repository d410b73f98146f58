"""Deploy pipeline: turn a git reference or an archive into a running app.

Stages run in a fixed order::

    acquiring -> detecting -> installing -> building -> allocating
      -> configuring -> registering -> starting -> done

A hard failure from acquiring through allocating aborts the deploy and
removes everything it created. Install and build failures are warnings,
as is a failure to write the route config. A failure to start leaves a
registered, stopped application and is reported in ``start_error``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .acquire import (
    clone_repository,
    extract_archive,
    hoist_single_directory,
    remove_file_quietly,
    remove_tree_quietly,
)
from .config import HostcoreConfig
from .detector import ProjectInfo, build_process_manifest, detect_project
from .errors import AcquisitionFailure, HostcoreError, InvalidInput, NameConflict, NotFound, QuotaExceeded
from .events import Event, EventStore, EventType
from .models import ApplicationRecord, SourceKind
from .network import PortAllocator
from .platform import (
    build_app_domain,
    is_local_domain,
    normalize_app_name,
    require_app_name,
    validate_remote_reference,
)
from .routes import RouteConfigWriter, RouteOptions, generate_route_config, reload_proxy, request_certificate
from .security import AnomalyLogger, AnomalyType, AuthorizationOracle, QuotaUsage
from .store import APPLICATIONS, RecordStore
from .supervisor import ProcessSupervisor

logger = logging.getLogger("hostcore.deploy")


class DeployStage(str, Enum):
    ACQUIRING = "acquiring"
    DETECTING = "detecting"
    INSTALLING = "installing"
    BUILDING = "building"
    ALLOCATING = "allocating"
    CONFIGURING = "configuring"
    REGISTERING = "registering"
    STARTING = "starting"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class DeployResult:
    """Outcome of one deploy: the record plus any non-fatal warnings."""
    name: str
    record: Optional[ApplicationRecord] = None
    warnings: List[str] = field(default_factory=list)
    stages: List[DeployStage] = field(default_factory=list)
    start_error: Optional[str] = None

    @property
    def stage(self) -> Optional[DeployStage]:
        return self.stages[-1] if self.stages else None

    @property
    def started(self) -> bool:
        return self.record is not None and self.record.is_running

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.record is not None,
            "name": self.name,
            "app": self.record.to_dict() if self.record else None,
            "warnings": list(self.warnings),
            "stages": [s.value for s in self.stages],
            "start_error": self.start_error,
        }


@dataclass
class CommandResult:
    returncode: Optional[int]
    output: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


Cloner = Callable[[str, Path], Awaitable[None]]
CommandRunner = Callable[[List[str], Path, float], Awaitable[CommandResult]]


async def run_command(argv: List[str], cwd: Path, timeout: float) -> CommandResult:
    """Run an install/build step, killing it when ``timeout`` expires."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            env=os.environ.copy(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as e:
        return CommandResult(returncode=127, output=str(e))

    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return CommandResult(returncode=None, timed_out=True)
    return CommandResult(returncode=proc.returncode, output=out.decode(errors="replace"))


class Deployer:
    """Entry point for deploys and for the application lifecycle."""

    def __init__(
        self,
        config: HostcoreConfig,
        store: RecordStore,
        ports: PortAllocator,
        routes: RouteConfigWriter,
        supervisor: ProcessSupervisor,
        oracle: Optional[AuthorizationOracle] = None,
        anomalies: Optional[AnomalyLogger] = None,
        events: Optional[EventStore] = None,
        cloner: Optional[Cloner] = None,
        command_runner: Optional[CommandRunner] = None,
    ):
        self.config = config
        self.store = store
        self.ports = ports
        self.routes = routes
        self.supervisor = supervisor
        self.oracle = oracle
        self.anomalies = anomalies
        self.events = events or supervisor.events
        self.cloner = cloner or self._clone
        self.command_runner = command_runner or run_command
        # name -> caller of deploys still in flight
        self._pending: Dict[str, Optional[str]] = {}

    async def _clone(self, ref: str, dest: Path) -> None:
        await clone_repository(ref, dest, timeout=self.config.install_timeout)

    # -- validation --------------------------------------------------------

    def root_for(self, name: str) -> Path:
        return self.config.apps_root / name

    def is_name_taken(self, name: str) -> bool:
        canonical = normalize_app_name(name)
        if not canonical:
            return False
        if canonical in self._pending:
            return True
        return self.store.find_one(APPLICATIONS, {"name": canonical}) is not None

    def normalize_and_check(self, name: str) -> str:
        canonical = require_app_name(name)
        if self.is_name_taken(canonical):
            raise NameConflict(f"Application name already taken: {canonical}")
        if self.root_for(canonical).exists():
            raise NameConflict(f"Directory for {canonical} already exists")
        return canonical

    def _check_quota(self, caller: Optional[str], name: str) -> None:
        if caller is None or self.oracle is None:
            return
        stored = self.oracle.get_usage(caller)
        in_flight = sum(1 for owner in self._pending.values() if owner == caller)
        usage = QuotaUsage(app_count=stored.app_count + in_flight, max_apps=stored.max_apps)
        if usage.exceeded:
            if self.anomalies is not None:
                self.anomalies.log(
                    AnomalyType.QUOTA_EXCEEDED,
                    f"Deploy of {name} rejected: {usage.app_count}/{usage.max_apps} applications",
                    user_id=caller,
                    app_name=name,
                    severity="low",
                )
            raise QuotaExceeded(
                f"Application limit reached ({usage.app_count}/{usage.max_apps}). "
                "Delete an application to deploy a new one."
            )

    # -- entry points ------------------------------------------------------

    async def deploy_from_remote_reference(
        self, ref: str, name: str, caller: Optional[str] = None
    ) -> DeployResult:
        canonical = self.normalize_and_check(name)
        try:
            validate_remote_reference(ref)
        except InvalidInput:
            if self.anomalies is not None:
                self.anomalies.log(
                    AnomalyType.INVALID_REFERENCE, f"Rejected repository URL {ref!r}",
                    user_id=caller, app_name=canonical, severity="low",
                )
            raise
        self._check_quota(caller, canonical)
        return await self._deploy(canonical, SourceKind.GIT, caller, ref=ref)

    async def deploy_from_archive(
        self, archive_path: Path, name: str, caller: Optional[str] = None
    ) -> DeployResult:
        canonical = self.normalize_and_check(name)
        archive = Path(archive_path)
        if not archive.is_file():
            raise InvalidInput(f"Archive not found: {archive.name}")
        self._check_quota(caller, canonical)
        return await self._deploy(canonical, SourceKind.ARCHIVE, caller, archive=archive)

    # -- pipeline ----------------------------------------------------------

    async def _abort(
        self,
        result: DeployResult,
        error: HostcoreError,
        root: Path,
        archive: Optional[Path] = None,
        port: Optional[int] = None,
    ) -> None:
        stage = result.stage.value if result.stage else "?"
        logger.error(f"[{result.name}] Deploy aborted during {stage}: {error.message}")
        result.stages.append(DeployStage.ABORTED)
        remove_tree_quietly(root)
        remove_file_quietly(archive)
        self.ports.release(port)
        await self.events.append(Event(
            EventType.APP_DEPLOY_FAILED, result.name, {"stage": stage, "error": error.message},
        ))

    async def _acquire(
        self, kind: SourceKind, root: Path, source_dir: Path,
        ref: Optional[str], archive: Optional[Path],
    ) -> None:
        try:
            (root / "logs").mkdir(parents=True)
            if kind == SourceKind.GIT:
                await self.cloner(ref, source_dir)
            else:
                extract_archive(archive, source_dir)
                if hoist_single_directory(source_dir):
                    logger.info(f"Hoisted single top-level directory in {source_dir}")
                remove_file_quietly(archive)
        except OSError as e:
            raise AcquisitionFailure(f"Failed to prepare source: {e}") from e
        if not source_dir.is_dir():
            raise AcquisitionFailure("Source directory is empty after acquisition")

    async def _run_step(
        self, result: DeployResult, label: str, command: str, cwd: Path, timeout: float
    ) -> bool:
        logger.info(f"[{result.name}] {label}: {command}")
        outcome = await self.command_runner(command.split(), cwd, timeout)
        if outcome.ok:
            return True
        if outcome.timed_out:
            message = f"{label} timed out after {int(timeout)}s"
        else:
            tail = outcome.output.strip()[-300:]
            message = f"{label} failed (exit {outcome.returncode})" + (f": {tail}" if tail else "")
        logger.warning(f"[{result.name}] {message}")
        result.warnings.append(message)
        return False

    def _write_json(self, path: Path, data: Dict[str, Any], result: DeployResult) -> None:
        try:
            with open(path, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.warning(f"[{result.name}] Could not write {path.name}: {e}")
            result.warnings.append(f"Could not write {path.name}: {e}")

    async def _deploy(
        self,
        name: str,
        kind: SourceKind,
        caller: Optional[str],
        ref: Optional[str] = None,
        archive: Optional[Path] = None,
    ) -> DeployResult:
        root = self.root_for(name)
        source_dir = root / "source"
        result = DeployResult(name=name)
        self._pending[name] = caller
        try:
            result.stages.append(DeployStage.ACQUIRING)
            try:
                await self._acquire(kind, root, source_dir, ref, archive)
            except HostcoreError as e:
                await self._abort(result, e, root, archive)
                raise

            result.stages.append(DeployStage.DETECTING)
            info = detect_project(source_dir)
            logger.info(f"[{name}] Detected {info.type.value} ({info.display_name})")

            build_ok = True
            if info.has_manifest:
                result.stages.append(DeployStage.INSTALLING)
                await self._run_step(
                    result, "Install", info.install_command, source_dir, self.config.install_timeout,
                )
                if info.build_command:
                    result.stages.append(DeployStage.BUILDING)
                    build_ok = await self._run_step(
                        result, "Build", info.build_command, source_dir, self.config.build_timeout,
                    )

            result.stages.append(DeployStage.ALLOCATING)
            try:
                port = self.ports.allocate(name)
            except HostcoreError as e:
                await self._abort(result, e, root, archive)
                raise

            result.stages.append(DeployStage.CONFIGURING)
            domain = build_app_domain(name, self.config.base_domain)
            self._configure(result, name, port, domain, info, source_dir, root)

            result.stages.append(DeployStage.REGISTERING)
            record = ApplicationRecord(
                name=name,
                port=port,
                domain=domain,
                project_type=info.type.value,
                project_info=info.to_dict(),
                source=kind.value,
                repo_url=ref,
                source_directory=str(source_dir),
                root_directory=str(root),
                owner=caller,
            )
            try:
                self.store.insert(APPLICATIONS, record.to_dict())
            except OSError as e:
                logger.error(f"[{name}] Could not persist application record: {e}")
                self.store.delete(APPLICATIONS, {"name": name})
                self.ports.release(port)
                self._remove_route(name)
                remove_tree_quietly(root)
                raise
            self._write_json(root / "app.json", record.to_dict(), result)
            result.record = record
        finally:
            self._pending.pop(name, None)

        logger.info(f"[{name}] Deployed on port {port} as {domain}")
        await self.events.append(Event(
            EventType.APP_DEPLOYED, name, {"port": port, "project_type": info.type.value},
        ))

        if not build_ok and not self.config.start_after_failed_build:
            result.warnings.append("Auto-start skipped because the build failed")
        else:
            result.stages.append(DeployStage.STARTING)
            try:
                result.record = await self.supervisor.start(name)
            except HostcoreError as e:
                logger.warning(f"[{name}] Deployed but failed to start: {e.message}")
                result.start_error = e.message
                result.warnings.append(e.message)

        result.stages.append(DeployStage.DONE)
        return result

    def _configure(
        self, result: DeployResult, name: str, port: int, domain: str,
        info: ProjectInfo, source_dir: Path, root: Path,
    ) -> None:
        try:
            options = RouteOptions(
                tls=self.config.tls_enabled,
                certificate_dir=self.config.certificate_dir,
            )
            self.routes.save(name, generate_route_config(name, port, domain, options))
            reload_proxy()
        except (HostcoreError, OSError, ValueError) as e:
            message = getattr(e, "message", str(e))
            logger.warning(f"[{name}] Route config not written: {message}")
            result.warnings.append(f"Route config not written: {message}")
        else:
            if self.config.tls_enabled and not is_local_domain(domain):
                self._request_certificate(result, name, domain)
        manifest = build_process_manifest(name, source_dir, port, info, root / "logs")
        self._write_json(root / "process.json", manifest, result)

    def _request_certificate(self, result: DeployResult, name: str, domain: str) -> None:
        try:
            request_certificate(domain, self.config.admin_email)
        except HostcoreError as e:
            logger.warning(f"[{name}] Certificate not requested: {e.message}")
            result.warnings.append(f"Certificate not requested: {e.message}")

    def _remove_route(self, name: str) -> None:
        try:
            self.routes.remove(name)
        except OSError as e:
            logger.warning(f"[{name}] Could not remove route config: {e}")

    # -- lifecycle ---------------------------------------------------------

    def _canonical(self, name: str) -> str:
        return require_app_name(name)

    def get_application(self, name: str) -> Dict[str, Any]:
        canonical = self._canonical(name)
        data = self.store.find_one(APPLICATIONS, {"name": canonical})
        if data is None:
            raise NotFound(f"Application not found: {canonical}")
        record = ApplicationRecord.from_dict(data)
        status = self.supervisor.status(canonical)
        record.status = "running" if status["running"] else "stopped"
        record.pid = status["pid"]
        return record.to_dict()

    def list_applications(self) -> List[Dict[str, Any]]:
        return self.supervisor.list_all()

    async def start(self, name: str) -> ApplicationRecord:
        return await self.supervisor.start(self._canonical(name))

    async def stop(self, name: str) -> ApplicationRecord:
        return await self.supervisor.stop(self._canonical(name))

    async def restart(self, name: str) -> ApplicationRecord:
        return await self.supervisor.restart(self._canonical(name))

    def status(self, name: str) -> Dict[str, Any]:
        return self.supervisor.status(self._canonical(name))

    def get_logs(self, name: str, stream: str = "out", lines: int = 100) -> str:
        return self.supervisor.get_logs(self._canonical(name), stream, lines)

    async def delete_application(self, name: str) -> Dict[str, Any]:
        """Stop, release the port, remove files and route, drop the record."""
        canonical = self._canonical(name)
        data = self.store.find_one(APPLICATIONS, {"name": canonical})
        if data is None:
            raise NotFound(f"Application not found: {canonical}")
        record = ApplicationRecord.from_dict(data)

        await self.supervisor.stop(canonical)
        self.ports.release(record.port)

        root = Path(record.root_directory) if record.root_directory else self.root_for(canonical)
        apps_root = self.config.apps_root.resolve()
        if root.resolve() != apps_root and root.resolve().is_relative_to(apps_root):
            remove_tree_quietly(root)
        else:
            logger.warning(f"[{canonical}] Not removing {root}: outside {self.config.apps_root}")

        self._remove_route(canonical)
        self.store.delete(APPLICATIONS, {"name": canonical})
        logger.info(f"[{canonical}] Deleted")
        await self.events.append(Event(EventType.APP_DELETED, canonical, {"port": record.port}))
        return {"success": True, "name": canonical}
