"""Configuration for the hosting core."""

import os
import tempfile

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml


def _default_root() -> Path:
    return Path(tempfile.gettempdir()) / "hostcore"


def _truthy(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class HostcoreConfig:
    """Filesystem layout, port range, timeouts and API settings."""
    apps_root: Path = field(default_factory=lambda: _default_root() / "sites")
    uploads_dir: Path = field(default_factory=lambda: _default_root() / "uploads")
    data_dir: Path = field(default_factory=lambda: _default_root() / "data")
    route_config_dir: Path = field(default_factory=lambda: _default_root() / "nginx")
    log_dir: Path = field(default_factory=lambda: _default_root() / "logs")
    port_min: int = 3001
    port_max: int = 4000
    base_domain: str = "localhost"
    tls_enabled: bool = False
    certificate_dir: str = "/etc/letsencrypt/live"
    admin_email: str = "admin@example.com"
    install_timeout: float = 300.0
    build_timeout: float = 600.0
    restart_grace: float = 1.0
    stop_timeout: float = 5.0
    start_after_failed_build: bool = True
    max_upload_mb: int = 100
    require_token: bool = False
    token: str = ""
    default_max_apps: int = 3

    def __post_init__(self) -> None:
        for name in ("apps_root", "uploads_dir", "data_dir", "route_config_dir", "log_dir"):
            setattr(self, name, Path(getattr(self, name)))
        if self.port_min > self.port_max:
            raise ValueError(f"Invalid port range: {self.port_min}-{self.port_max}")

    @property
    def ports_ledger_path(self) -> Path:
        return self.data_dir / "ports.json"

    @property
    def records_path(self) -> Path:
        return self.data_dir / "records.json"

    @property
    def anomaly_log_path(self) -> Path:
        return self.log_dir / "anomalies.jsonl"

    def ensure_directories(self) -> None:
        for path in (self.apps_root, self.uploads_dir, self.data_dir, self.route_config_dir, self.log_dir):
            path.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls, env: Optional[dict[str, str]] = None) -> "HostcoreConfig":
        src = env if env is not None else os.environ

        def clean(key: str) -> Optional[str]:
            value = src.get(f"HOSTCORE_{key}")
            if value is None:
                return None
            v = str(value).strip()
            return v or None

        data: dict = {}
        paths = {
            "apps_root": "APPS_ROOT",
            "uploads_dir": "UPLOADS_DIR",
            "data_dir": "DATA_DIR",
            "route_config_dir": "ROUTE_DIR",
            "log_dir": "LOG_DIR",
        }
        for attr, key in paths.items():
            if clean(key):
                data[attr] = Path(clean(key))

        for attr, key in (("port_min", "PORT_MIN"), ("port_max", "PORT_MAX"),
                          ("max_upload_mb", "MAX_UPLOAD_MB"), ("default_max_apps", "DEFAULT_MAX_APPS")):
            if clean(key):
                data[attr] = int(clean(key))

        for attr, key in (("install_timeout", "INSTALL_TIMEOUT"), ("build_timeout", "BUILD_TIMEOUT"),
                          ("restart_grace", "RESTART_GRACE"), ("stop_timeout", "STOP_TIMEOUT")):
            if clean(key):
                data[attr] = float(clean(key))

        for attr, key in (("tls_enabled", "TLS"), ("require_token", "REQUIRE_TOKEN"),
                          ("start_after_failed_build", "START_AFTER_FAILED_BUILD")):
            if clean(key) is not None:
                data[attr] = _truthy(clean(key))

        for attr, key in (("base_domain", "BASE_DOMAIN"), ("certificate_dir", "CERT_DIR"),
                          ("admin_email", "ADMIN_EMAIL"), ("token", "TOKEN")):
            if clean(key):
                data[attr] = clean(key)

        return cls(**data)

    @classmethod
    def from_dict(cls, data: dict) -> "HostcoreConfig":
        """Create configuration from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    @classmethod
    def from_yaml(cls, path: Path) -> "HostcoreConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[f.name] = str(value) if isinstance(value, Path) else value
        return out

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file."""
        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)


def load_config(path: str | Path) -> HostcoreConfig:
    """Load hosting configuration from file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    return HostcoreConfig.from_yaml(path)
