"""Reverse-proxy (nginx) configuration for deployed applications.

``generate_route_config`` is a pure text producer. Certificate issuance
and proxy reload are simulated: the commands are logged, never run.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from .errors import InvalidInput
from .platform import is_valid_domain, normalize_app_name, normalize_domain

logger = logging.getLogger("hostcore.routes")

_EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
_CERT_DIR_RE = re.compile(r"^[A-Za-z0-9_./-]+$")


class RouteOptions(BaseModel):
    tls: bool = False
    custom_domain: Optional[str] = None
    certificate_dir: str = Field(default="/etc/letsencrypt/live")

    @field_validator("custom_domain")
    @classmethod
    def _check_custom_domain(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        out = normalize_domain(v)
        if not is_valid_domain(out):
            raise ValueError(f"invalid domain: {v}")
        return out

    @field_validator("certificate_dir")
    @classmethod
    def _check_certificate_dir(cls, v: str) -> str:
        v = (v or "").rstrip("/") or "/etc/letsencrypt/live"
        if not _CERT_DIR_RE.fullmatch(v):
            raise ValueError(f"invalid certificate directory: {v}")
        return v


def _checked_hostname(hostname: str) -> str:
    host = normalize_domain(hostname)
    if not is_valid_domain(host):
        raise InvalidInput(f"Invalid hostname: {hostname!r}")
    return host


def _upstream_name(name: str) -> str:
    return "upstream_" + normalize_app_name(name).replace("-", "_")


def _location_block(upstream: str) -> str:
    return f"""    location / {{
        proxy_pass http://{upstream};
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection 'upgrade';
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_cache_bypass $http_upgrade;
        proxy_read_timeout 86400;
    }}"""


def generate_route_config(
    name: str,
    port: int,
    hostname: str,
    options: Optional[RouteOptions] = None,
) -> str:
    """Render the nginx stanza routing ``hostname`` to ``127.0.0.1:port``."""
    options = options or RouteOptions()
    if not normalize_app_name(name):
        raise InvalidInput(f"Invalid application name: {name!r}")
    port = int(port)
    if not 0 < port <= 65535:
        raise InvalidInput(f"Invalid port: {port}")

    server_name = options.custom_domain or _checked_hostname(hostname)
    upstream = _upstream_name(name)
    location = _location_block(upstream)

    config = f"""# Route for {normalize_app_name(name)}
upstream {upstream} {{
    server 127.0.0.1:{port};
    keepalive 64;
}}

"""

    if not options.tls:
        config += f"""server {{
    listen 80;
    listen [::]:80;
    server_name {server_name};

{location}
}}
"""
        return config

    cert_path = f"{options.certificate_dir}/{server_name}"
    config += f"""server {{
    listen 80;
    listen [::]:80;
    server_name {server_name};
    return 301 https://$server_name$request_uri;
}}

server {{
    listen 443 ssl http2;
    listen [::]:443 ssl http2;
    server_name {server_name};

    ssl_certificate {cert_path}/fullchain.pem;
    ssl_certificate_key {cert_path}/privkey.pem;
    ssl_session_timeout 1d;
    ssl_session_cache shared:SSL:50m;
    ssl_session_tickets off;
    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_prefer_server_ciphers off;

    add_header Strict-Transport-Security "max-age=63072000" always;

{location}
}}
"""
    return config


class RouteConfigWriter:
    """Stores one ``<name>.conf`` per application in a config directory."""

    def __init__(self, config_dir: Path):
        self.config_dir = Path(config_dir)

    def path_for(self, name: str) -> Path:
        canonical = normalize_app_name(name)
        if not canonical:
            raise InvalidInput(f"Invalid application name: {name!r}")
        return self.config_dir / f"{canonical}.conf"

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def read(self, name: str) -> Optional[str]:
        path = self.path_for(name)
        if not path.exists():
            return None
        return path.read_text()

    def save(self, name: str, text: str) -> Path:
        path = self.path_for(name)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        logger.info(f"Route config saved: {path}")
        return path

    def remove(self, name: str) -> bool:
        path = self.path_for(name)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Route config removed: {path}")
        return True


def generate_certificate_command(domain: str, email: str) -> str:
    host = _checked_hostname(domain)
    if not _EMAIL_RE.fullmatch(email or ""):
        raise InvalidInput(f"Invalid email address: {email!r}")
    return f"sudo certbot --nginx -d {host} --non-interactive --agree-tos -m {email}"


def request_certificate(domain: str, email: str) -> Dict[str, Any]:
    """Simulated certificate request; logs the command that would run."""
    command = generate_certificate_command(domain, email)
    logger.info(f"[simulated] {command}")
    return {"success": True, "simulated": True, "command": command}


def reload_proxy() -> Dict[str, Any]:
    """Simulated proxy reload."""
    commands = ["nginx -t", "systemctl reload nginx"]
    for command in commands:
        logger.info(f"[simulated] {command}")
    return {"success": True, "simulated": True, "commands": commands}
