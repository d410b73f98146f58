"""Sandboxed interactive command channel for one application.

Commands are checked by ``CommandPolicy`` and then executed directly with
``asyncio.create_subprocess_exec``; no shell ever sees the command string.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
import signal
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .security import AnomalyLogger, AnomalyType

logger = logging.getLogger("hostcore.shell")

# Checked against the raw command before tokenizing
BLOCKED_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"[;&|`$()]"), "shell metacharacters are not allowed"),
    (re.compile(r"[<>]"), "redirection is not allowed"),
    (re.compile(r"[\r\n\x00]"), "control characters are not allowed"),
    (re.compile(r"\b(sh|bash|zsh|dash|ksh|fish)\b"), "nested shells are not allowed"),
    (re.compile(r"\b(eval|exec)\b"), "eval/exec are not allowed"),
    (re.compile(r"\brm\s+(-[rfRF]+\s+)?[/*~]"), "destructive filesystem commands are not allowed"),
    (re.compile(r"\b(sudo|su|doas)\b"), "privilege escalation is not allowed"),
    (re.compile(r"\b(chmod|chown|chgrp|passwd)\b"), "changing permissions or ownership is not allowed"),
    (re.compile(r"\b(dd|mkfs|fdisk|format|mount|umount)\b"), "disk-level commands are not allowed"),
    (re.compile(r"\b(curl|wget)\b.*\bsh\b"), "download-and-run is not allowed"),
    (re.compile(r"\b(python[0-9.]*|perl|ruby|php|lua)\b"), "other interpreters are not allowed"),
]

ANY_ARGS = None

# base command -> permitted sub-operation prefixes (None: any arguments)
ALLOWED_COMMANDS: Dict[str, Optional[Tuple[str, ...]]] = {
    "npm": ("start", "install", "test", "run dev", "run build", "run start",
            "ls", "list", "outdated", "version", "-v", "--version"),
    "node": ("index.js", "server.js", "main.js", "app.js", "bot.js", "--version", "-v"),
    "ls": ANY_ARGS,
    "cat": ANY_ARGS,
    "head": ANY_ARGS,
    "tail": ANY_ARGS,
    "pwd": ANY_ARGS,
    "clear": ANY_ARGS,
    "ps": ("aux", "-a"),
}

NODE_DENIED_FLAGS = ("-e", "--eval", "-p", "--print", "-r", "--require", "--import", "--loader")
NPM_DENIED_SUBCOMMANDS = ("set", "config", "exec", "x", "npx", "publish", "adduser", "login", "token")

# These read files, so their arguments must stay inside the application directory
PATH_SCOPED_COMMANDS = {"ls", "cat", "head", "tail"}


@dataclass
class CommandCheck:
    allowed: bool
    argv: List[str] = field(default_factory=list)
    reason: str = ""


class CommandPolicy:
    """Allowlist table plus a denylist of dangerous syntax."""

    def __init__(
        self,
        allowed: Optional[Dict[str, Optional[Tuple[str, ...]]]] = None,
        blocked: Optional[List[Tuple[re.Pattern, str]]] = None,
    ):
        self.allowed = dict(ALLOWED_COMMANDS if allowed is None else allowed)
        self.blocked = list(BLOCKED_PATTERNS if blocked is None else blocked)

    def check(self, command: str, workdir: Optional[Path] = None) -> CommandCheck:
        """Validate ``command``; file arguments are resolved against ``workdir`` when given."""
        command = (command or "").strip()
        if not command:
            return CommandCheck(False, reason="empty command")

        for pattern, reason in self.blocked:
            if pattern.search(command):
                return CommandCheck(False, reason=f"Command blocked: {reason}")

        tokens = command.split()
        base = os.path.basename(tokens[0])
        args = tokens[1:]

        if base not in self.allowed:
            allowed = ", ".join(sorted(self.allowed))
            return CommandCheck(False, reason=f"Command not allowed: {base}. Allowed: {allowed}")

        if base == "node" and any(a == f or a.startswith(f + "=") for a in args for f in NODE_DENIED_FLAGS):
            return CommandCheck(False, reason="Inline code evaluation is not allowed")
        if base == "npm" and args and args[0] in NPM_DENIED_SUBCOMMANDS:
            return CommandCheck(False, reason=f"npm {args[0]} is not allowed")

        prefixes = self.allowed[base]
        if prefixes is not None and args:
            rest = " ".join(args)
            if not any(rest == p or rest.startswith(p + " ") for p in prefixes):
                return CommandCheck(False, reason=f"Subcommand not allowed for {base}: {rest}")

        if base in PATH_SCOPED_COMMANDS:
            root = Path(workdir).resolve() if workdir is not None else None
            for arg in args:
                if arg.startswith("-"):
                    continue
                path = PurePosixPath(arg)
                outside = path.is_absolute() or ".." in path.parts or arg.startswith("~")
                # Symlinks inside the directory may still point elsewhere
                if not outside and root is not None:
                    outside = not (root / arg).resolve().is_relative_to(root)
                if outside:
                    return CommandCheck(False, reason=f"Path outside the application directory: {arg}")

        # Run the resolved base name, never a caller-supplied path
        return CommandCheck(True, argv=[base, *args])


Sender = Callable[[Dict[str, Any]], Awaitable[None]]

SIGNALS = {"SIGINT": signal.SIGINT, "SIGTERM": signal.SIGTERM}

READ_CHUNK_SIZE = 4096


def _normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\n", "\r\n")


class ShellSession:
    """One connection's command session against one application directory.

    At most one subprocess runs at a time; starting a new command
    terminates the previous one.
    """

    def __init__(
        self,
        app_name: str,
        workdir: Path,
        send: Sender,
        policy: Optional[CommandPolicy] = None,
        anomalies: Optional[AnomalyLogger] = None,
        user_id: Optional[str] = None,
    ):
        self.app_name = app_name
        self.workdir = Path(workdir)
        self.send = send
        self.policy = policy or CommandPolicy()
        self.anomalies = anomalies
        self.user_id = user_id
        self._process: Optional[asyncio.subprocess.Process] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def active(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def open(self, out_tail: str = "", error_tail: str = "") -> None:
        await self.send({"type": "logs", "out": out_tail, "error": error_tail})
        await self.send({"type": "output", "content": f"Connected to {self.app_name}\r\n"})
        await self.send({"type": "output", "content": f"Working directory: {self.workdir}\r\n"})

    async def handle_message(self, data: Dict[str, Any]) -> None:
        kind = data.get("type") if isinstance(data, dict) else None
        if kind == "command":
            await self.run_command(str(data.get("command") or ""))
        elif kind == "signal":
            await self.interrupt(str(data.get("signal") or "SIGINT"))
        else:
            await self.send({"type": "error", "content": f"Unknown message type: {kind}\r\n"})

    async def run_command(self, command: str) -> bool:
        """Validate and launch ``command``. Returns True if it was spawned."""
        command = (command or "").strip()
        if not command or self._closed:
            return False

        check = self.policy.check(command, workdir=self.workdir)
        if not check.allowed:
            logger.warning(f"[{self.app_name}] Rejected command {command!r}: {check.reason}")
            if self.anomalies is not None:
                self.anomalies.log(
                    AnomalyType.BLOCKED_COMMAND,
                    check.reason,
                    user_id=self.user_id,
                    app_name=self.app_name,
                    metadata={"command": command},
                )
            await self.send({"type": "error", "content": f"{check.reason}\r\n"})
            return False

        await self._terminate_active()

        if check.argv == ["clear"]:
            await self.send({"type": "output", "content": "\x1b[2J\x1b[H"})
            return False

        await self.send({"type": "output", "content": f"$ {command}\r\n"})
        env = os.environ.copy()
        env["TERM"] = "xterm-256color"
        try:
            process = await asyncio.create_subprocess_exec(
                *check.argv,
                cwd=str(self.workdir),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            await self.send({"type": "error", "content": f"Failed to run {check.argv[0]}: {e}\r\n"})
            return False

        self._process = process
        self._task = asyncio.create_task(self._pump(process))
        return True

    async def _read_stream(self, stream: Optional[asyncio.StreamReader], kind: str) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending_cr = ""
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            text = pending_cr + decoder.decode(chunk, final=not chunk)
            # Hold a trailing CR back so a CRLF split across reads stays one newline
            pending_cr = ""
            if chunk and text.endswith("\r"):
                text, pending_cr = text[:-1], "\r"
            if text and not self._closed:
                await self.send({"type": kind, "content": _normalize_newlines(text)})
            if not chunk:
                break

    async def _pump(self, process: asyncio.subprocess.Process) -> None:
        await asyncio.gather(
            self._read_stream(process.stdout, "output"),
            self._read_stream(process.stderr, "error"),
        )
        code = await process.wait()
        if self._process is process:
            self._process = None
        if not self._closed:
            await self.send({"type": "output", "content": f"\r\nProcess exited with code {code}\r\n"})

    async def interrupt(self, signal_name: str = "SIGINT") -> None:
        sig = SIGNALS.get(signal_name.upper())
        if sig is None:
            await self.send({"type": "error", "content": f"Unsupported signal: {signal_name}\r\n"})
            return
        if not self.active:
            return
        try:
            self._process.send_signal(sig)
        except ProcessLookupError:
            return
        if sig == signal.SIGINT:
            await self.send({"type": "output", "content": "^C\r\n"})

    async def _terminate_active(self) -> None:
        process, task = self._process, self._task
        self._process = None
        self._task = None
        if process is not None and process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=5)
            except asyncio.TimeoutError:
                if process is not None and process.returncode is None:
                    process.kill()
            except Exception as e:
                # The peer may already be gone while output is still streaming
                logger.debug(f"[{self.app_name}] Output stream ended with error: {e}")

    async def wait(self) -> None:
        """Wait until the active command has finished streaming."""
        if self._task is not None:
            await self._task

    async def close(self) -> None:
        self._closed = True
        await self._terminate_active()
