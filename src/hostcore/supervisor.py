"""Supervision of deployed application processes.

``ProcessSupervisor`` owns the table of live child processes. Nothing
about it is global: tests build independent supervisors with a fake
launcher.

Exit handling is event driven. Each spawned process gets a watcher task
that appends a ``process.exited`` event when the process ends; the
supervisor subscribes to that event and applies the stopped transition.
Every handle carries an instance id so that the exit of an old instance
cannot mark a freshly started one as stopped.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .detector import ProjectInfo, resolve_launch_command
from .errors import InvalidInput, NotFound, StartFailure
from .events import Event, EventStore, EventType
from .models import AppStatus, ApplicationRecord, utcnow_iso
from .store import APPLICATIONS, RecordStore

logger = logging.getLogger("hostcore.supervisor")

LOG_STREAMS = {"out": "out.log", "error": "error.log"}


class SupervisedProcess(Protocol):
    pid: int

    @property
    def returncode(self) -> Optional[int]: ...

    async def wait(self) -> int: ...

    def send_signal(self, sig: int) -> None: ...


ProcessLauncher = Callable[..., Awaitable[SupervisedProcess]]
CommandResolver = Callable[[ApplicationRecord], List[str]]


class SpawnedProcess:
    """asyncio subprocess started in its own session.

    Signals go to the whole process group so that ``npm start`` and the
    server it launches stop together.
    """

    def __init__(self, proc: asyncio.subprocess.Process):
        self._proc = proc
        self.pid = proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    async def wait(self) -> int:
        return await self._proc.wait()

    def send_signal(self, sig: int) -> None:
        if self._proc.returncode is not None:
            return
        try:
            os.killpg(os.getpgid(self.pid), sig)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"Process group signal failed for {self.pid}: {e}")
            try:
                self._proc.send_signal(sig)
            except ProcessLookupError:
                pass


async def spawn_process(
    argv: List[str],
    *,
    cwd: Path,
    env: Dict[str, str],
    stdout: IO[bytes],
    stderr: IO[bytes],
) -> SpawnedProcess:
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd),
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=stdout,
        stderr=stderr,
        start_new_session=True,
    )
    return SpawnedProcess(proc)


def default_command_resolver(record: ApplicationRecord) -> List[str]:
    info = ProjectInfo.from_dict(record.project_info)
    return resolve_launch_command(record.source_path, info, record.port)


@dataclass
class ProcessHandle:
    """In-memory reference to one live child process."""
    name: str
    process: SupervisedProcess
    pid: int
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    instance_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    watcher: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self.process.returncode is None


def tail_file(path: Path, lines: int = 100) -> str:
    if lines <= 0 or not path.exists():
        return ""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return "".join(deque(f, maxlen=lines))


class ProcessSupervisor:
    """Starts, stops and tracks application processes."""

    def __init__(
        self,
        store: RecordStore,
        events: Optional[EventStore] = None,
        launcher: Optional[ProcessLauncher] = None,
        command_resolver: Optional[CommandResolver] = None,
        restart_grace: float = 1.0,
        stop_timeout: float = 5.0,
    ):
        self.store = store
        self.events = events or EventStore()
        self.launcher = launcher or spawn_process
        self.command_resolver = command_resolver or default_command_resolver
        self.restart_grace = restart_grace
        self.stop_timeout = stop_timeout
        self._handles: Dict[str, ProcessHandle] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._pending: set[asyncio.Task] = set()
        self._unsubscribe = self.events.subscribe(EventType.PROCESS_EXITED, self._on_process_exited)

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def _record(self, name: str) -> ApplicationRecord:
        data = self.store.find_one(APPLICATIONS, {"name": name})
        if data is None:
            raise NotFound(f"Application not found: {name}")
        return ApplicationRecord.from_dict(data)

    def _set_status(self, name: str, status: AppStatus, pid: Optional[int] = None) -> None:
        self.store.update(
            APPLICATIONS,
            {"name": name},
            {"status": status.value, "pid": pid, "updated_at": utcnow_iso()},
        )

    def _track(self, task: asyncio.Task) -> None:
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def get_handle(self, name: str) -> Optional[ProcessHandle]:
        return self._handles.get(name)

    def is_running(self, name: str) -> bool:
        handle = self._handles.get(name)
        return handle is not None and handle.is_running

    async def start(self, name: str) -> ApplicationRecord:
        """Start ``name`` unless it is already running."""
        async with self._lock_for(name):
            record = self._record(name)
            if self.is_running(name):
                logger.debug(f"[{name}] already running (PID {self._handles[name].pid})")
                return record

            argv = self.command_resolver(record)
            env = os.environ.copy()
            env["PORT"] = str(record.port)
            env["NODE_ENV"] = "production"

            logs_dir = record.logs_path
            logs_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"[{name}] Starting: {' '.join(argv)} (port {record.port})")

            try:
                with open(logs_dir / LOG_STREAMS["out"], "ab") as out, \
                        open(logs_dir / LOG_STREAMS["error"], "ab") as err:
                    process = await self.launcher(
                        argv, cwd=record.source_path, env=env, stdout=out, stderr=err,
                    )
            except OSError as e:
                logger.error(f"[{name}] Failed to start: {e}")
                self._set_status(name, AppStatus.STOPPED)
                raise StartFailure(f"Failed to start {name}: {e}") from e

            handle = ProcessHandle(name=name, process=process, pid=process.pid)
            self._handles[name] = handle
            self._set_status(name, AppStatus.RUNNING, pid=process.pid)
            handle.watcher = asyncio.create_task(self._watch(handle))
            logger.info(f"[{name}] Started (PID {process.pid})")

        await self.events.append(Event(EventType.APP_STARTED, name, {"pid": process.pid}))
        return self._record(name)

    async def _watch(self, handle: ProcessHandle) -> None:
        returncode = await handle.process.wait()
        logger.info(f"[{handle.name}] Process {handle.pid} exited with code {returncode}")
        await self.events.append(Event(
            EventType.PROCESS_EXITED,
            handle.name,
            {"pid": handle.pid, "instance_id": handle.instance_id, "returncode": returncode},
        ))

    def _on_process_exited(self, event: Event) -> None:
        self.apply_exit(event.aggregate_id, event.data.get("instance_id"))

    def apply_exit(self, name: str, instance_id: Optional[str]) -> bool:
        """Mark ``name`` stopped if ``instance_id`` is its current process.

        Returns False for a stale notification, which changes nothing.
        """
        handle = self._handles.get(name)
        if handle is None or handle.instance_id != instance_id:
            logger.debug(f"[{name}] Ignoring exit of stale instance {instance_id}")
            return False
        del self._handles[name]
        self._set_status(name, AppStatus.STOPPED)
        return True

    async def stop(self, name: str) -> ApplicationRecord:
        """Stop ``name``. Stopping a stopped application is not an error."""
        async with self._lock_for(name):
            record = self._record(name)
            handle = self._handles.pop(name, None)
            if handle is not None and handle.is_running:
                logger.info(f"[{name}] Stopping (PID {handle.pid})")
                handle.process.send_signal(signal.SIGTERM)
                self._track(asyncio.create_task(self._escalate(handle)))
            self._set_status(name, AppStatus.STOPPED)

        if handle is not None:
            await self.events.append(Event(EventType.APP_STOPPED, name, {"pid": handle.pid}))
        record.status = AppStatus.STOPPED.value
        record.pid = None
        return record

    async def _escalate(self, handle: ProcessHandle) -> None:
        try:
            await asyncio.wait_for(handle.process.wait(), timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{handle.name}] PID {handle.pid} didn't stop gracefully, sending SIGKILL")
            handle.process.send_signal(signal.SIGKILL)

    async def restart(self, name: str) -> ApplicationRecord:
        await self.stop(name)
        await asyncio.sleep(self.restart_grace)
        return await self.start(name)

    def status(self, name: str) -> Dict[str, Any]:
        self._record(name)
        handle = self._handles.get(name)
        running = handle is not None and handle.is_running
        return {"name": name, "running": running, "pid": handle.pid if running else None}

    def list_all(self) -> List[Dict[str, Any]]:
        """All records, with status reflecting what is actually supervised."""
        out = []
        for data in self.store.find_many(APPLICATIONS):
            record = ApplicationRecord.from_dict(data)
            handle = self._handles.get(record.name)
            if handle is not None and handle.is_running:
                record.status = AppStatus.RUNNING.value
                record.pid = handle.pid
            else:
                record.status = AppStatus.STOPPED.value
                record.pid = None
            out.append(record.to_dict())
        return out

    def get_logs(self, name: str, stream: str = "out", lines: int = 100) -> str:
        if stream not in LOG_STREAMS:
            raise InvalidInput(f"Unknown log stream: {stream!r} (expected 'out' or 'error')")
        record = self._record(name)
        return tail_file(record.logs_path / LOG_STREAMS[stream], lines)

    def reconcile(self) -> int:
        """Mark persisted ``running`` records without a live handle as stopped."""
        changed = 0
        for data in self.store.find_many(APPLICATIONS, {"status": AppStatus.RUNNING.value}):
            if data["name"] not in self._handles:
                self._set_status(data["name"], AppStatus.STOPPED)
                changed += 1
        if changed:
            logger.info(f"Marked {changed} application(s) stopped after restart")
        return changed

    async def shutdown(self) -> None:
        for name in list(self._handles):
            try:
                await self.stop(name)
            except NotFound:
                self._handles.pop(name, None)
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._unsubscribe()
