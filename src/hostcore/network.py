"""Port allocation for deployed applications."""

from __future__ import annotations

import json
import logging
import socket
from pathlib import Path
from threading import Lock
from typing import Optional

from .errors import NoPortAvailable

logger = logging.getLogger("hostcore.ports")

# Minimum safe port - below this are privileged/system ports
MIN_SAFE_PORT = 1024


def check_port(port: int, host: str = "127.0.0.1") -> bool:
    """Check if a specific port can be bound right now."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((host, port))
            return True
    except OSError:
        return False


class PortAllocator:
    """Hands out one port per application from an inclusive range.

    The ledger of allocated ports is persisted as JSON so ports survive a
    restart of the service. A port leaves the ledger only through
    ``release`` (on application deletion), never on stop.

    Allocation scans the range in ascending order, skipping ledger ports,
    and takes the first port that is also bindable on the loopback
    interface. The scan and the ledger write happen under one lock.
    """

    def __init__(
        self,
        ledger_path: Optional[Path] = None,
        port_min: int = 3001,
        port_max: int = 4000,
        host: str = "127.0.0.1",
    ):
        # Safety: ensure we don't allocate privileged ports
        if port_min < MIN_SAFE_PORT:
            port_min = MIN_SAFE_PORT
        if port_max > 65535:
            port_max = 65535
        if port_min > port_max:
            raise ValueError(f"Invalid port range: {port_min}-{port_max}")

        self.port_min = port_min
        self.port_max = port_max
        self.host = host
        self.ledger_path = Path(ledger_path) if ledger_path else None
        self._used: set[int] = set()
        self._lock = Lock()
        self._load()

    def _load(self) -> None:
        """Load the port ledger from disk."""
        if not self.ledger_path or not self.ledger_path.exists():
            return
        try:
            with open(self.ledger_path) as f:
                data = json.load(f)
            self._used = {int(p) for p in data.get("used_ports", [])}
        except (json.JSONDecodeError, OSError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable port ledger {self.ledger_path}: {e}")
            self._used = set()

    def _save(self) -> None:
        """Persist the port ledger to disk."""
        if not self.ledger_path:
            return
        data = {
            "used_ports": sorted(self._used),
            "port_range": {"min": self.port_min, "max": self.port_max},
        }
        self.ledger_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.ledger_path, "w") as f:
            json.dump(data, f, indent=2)

    def is_port_free(self, port: int) -> bool:
        if port in self._used:
            return False
        return check_port(port, self.host)

    def allocate(self, name: str = "") -> int:
        """Reserve the lowest free port in the range for ``name``."""
        with self._lock:
            for port in range(self.port_min, self.port_max + 1):
                if port in self._used:
                    continue
                if not self.is_port_free(port):
                    logger.debug(f"Port {port} not in ledger but already bound, skipping")
                    continue
                self._used.add(port)
                self._save()
                logger.info(f"Allocated port {port} for {name or '<unnamed>'}")
                return port

        raise NoPortAvailable(f"No free ports available in range {self.port_min}-{self.port_max}")

    def release(self, port: Optional[int]) -> None:
        """Return a port to the pool. Releasing an unallocated port is a no-op."""
        if port is None:
            return
        with self._lock:
            if port not in self._used:
                return
            self._used.discard(port)
            self._save()
            logger.info(f"Released port {port}")

    def list_used(self) -> set[int]:
        with self._lock:
            return set(self._used)

    def to_dict(self) -> dict:
        return {
            "used_ports": sorted(self.list_used()),
            "port_range": {"min": self.port_min, "max": self.port_max},
        }
