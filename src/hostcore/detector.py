"""Classify an acquired source tree and derive its build/start commands."""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger("hostcore.detector")

MANIFEST = "package.json"
STATIC_ENTRY = "index.html"


class ProjectType(str, Enum):
    FRAMEWORK_SSR = "framework-ssr"
    SPA_BUNDLED = "spa-bundled"
    HTTP_SERVICE = "http-service"
    BACKGROUND_WORKER = "background-worker"
    GENERIC_RUNTIME = "generic-runtime-project"
    STATIC_SITE = "static-site"
    UNKNOWN = "unknown"


# dependency -> (display name, default build, default start)
SSR_FRAMEWORKS: Dict[str, tuple[str, str, str]] = {
    "next": ("Next.js", "npx next build", "npx next start"),
    "nuxt": ("Nuxt", "npx nuxt build", "node .output/server/index.mjs"),
    "@remix-run/node": ("Remix", "npx remix build", "npx remix-serve build"),
    "@sveltejs/kit": ("SvelteKit", "npx vite build", "node build"),
    "astro": ("Astro", "npx astro build", "npx astro preview"),
}

CLIENT_BUNDLERS: Dict[str, str] = {
    "vite": "Vite",
    "react-scripts": "Create React App",
    "parcel": "Parcel",
    "webpack": "Webpack",
}

WEB_SERVER_LIBRARIES: Dict[str, str] = {
    "express": "Express",
    "fastify": "Fastify",
    "koa": "Koa",
    "@hapi/hapi": "hapi",
    "hapi": "hapi",
}

DEFAULT_PORTS = {
    ProjectType.FRAMEWORK_SSR: 3000,
    ProjectType.SPA_BUNDLED: 4173,
    ProjectType.HTTP_SERVICE: 3000,
    ProjectType.BACKGROUND_WORKER: None,
    ProjectType.GENERIC_RUNTIME: 3000,
    ProjectType.STATIC_SITE: None,
    ProjectType.UNKNOWN: None,
}


@dataclass
class ProjectInfo:
    """Classification result for one source tree."""
    type: ProjectType
    display_name: str
    description: str = ""
    build_command: Optional[str] = None
    start_command: Optional[str] = None
    install_command: Optional[str] = None
    default_port: Optional[int] = None
    has_manifest: bool = False
    package: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "display_name": self.display_name,
            "description": self.description,
            "build_command": self.build_command,
            "start_command": self.start_command,
            "install_command": self.install_command,
            "default_port": self.default_port,
            "has_manifest": self.has_manifest,
            "package": dict(self.package),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectInfo":
        try:
            ptype = ProjectType(data.get("type", "unknown"))
        except ValueError:
            ptype = ProjectType.UNKNOWN
        return cls(
            type=ptype,
            display_name=data.get("display_name", ""),
            description=data.get("description", ""),
            build_command=data.get("build_command"),
            start_command=data.get("start_command"),
            install_command=data.get("install_command"),
            default_port=data.get("default_port"),
            has_manifest=bool(data.get("has_manifest")),
            package=dict(data.get("package") or {}),
        )


def read_manifest(source_dir: Path) -> Optional[Dict[str, Any]]:
    path = Path(source_dir) / MANIFEST
    if not path.is_file():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        logger.warning(f"Ignoring unreadable {MANIFEST} in {source_dir}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {MANIFEST} in {source_dir}: not an object")
        return None
    return data


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first_match(deps: Dict[str, Any], candidates: Dict[str, Any]) -> Optional[str]:
    for name in candidates:
        if name in deps:
            return name
    if any(d.startswith("@remix-run/") for d in deps) and "@remix-run/node" in candidates:
        return "@remix-run/node"
    return None


def _entry_point(manifest: Dict[str, Any]) -> str:
    main = manifest.get("main")
    if isinstance(main, str) and main.strip():
        return main.strip()
    return "index.js"


def detect_project(source_dir: Path) -> ProjectInfo:
    """Classify ``source_dir``.

    Misclassification only degrades later commands to best effort; this
    never raises for a readable directory.
    """
    source_dir = Path(source_dir)
    manifest = read_manifest(source_dir)

    if manifest is None:
        if (source_dir / STATIC_ENTRY).is_file():
            return ProjectInfo(
                type=ProjectType.STATIC_SITE,
                display_name="Static Site",
                description="Static HTML site",
            )
        return ProjectInfo(type=ProjectType.UNKNOWN, display_name="Unknown", description="Unrecognized project")

    scripts = _mapping(manifest.get("scripts"))
    deps = {**_mapping(manifest.get("devDependencies")), **_mapping(manifest.get("dependencies"))}
    package = {
        "name": manifest.get("name"),
        "version": manifest.get("version"),
        "description": manifest.get("description"),
        "main": manifest.get("main"),
    }
    description = str(manifest.get("description") or "")

    has_build = "build" in scripts
    has_start = "start" in scripts

    ssr = _first_match(deps, SSR_FRAMEWORKS)
    bundler = _first_match(deps, CLIENT_BUNDLERS)
    server = _first_match(deps, WEB_SERVER_LIBRARIES)

    if ssr:
        label, default_build, default_start = SSR_FRAMEWORKS[ssr]
        info = ProjectInfo(
            type=ProjectType.FRAMEWORK_SSR,
            display_name=label,
            build_command="npm run build" if has_build else default_build,
            start_command="npm start" if has_start else default_start,
        )
    elif bundler:
        info = ProjectInfo(
            type=ProjectType.SPA_BUNDLED,
            display_name=CLIENT_BUNDLERS[bundler],
            build_command="npm run build" if has_build else None,
            start_command="npm run preview" if "preview" in scripts else ("npm start" if has_start else None),
        )
    elif server:
        info = ProjectInfo(
            type=ProjectType.HTTP_SERVICE,
            display_name=WEB_SERVER_LIBRARIES[server],
            build_command="npm run build" if has_build else None,
            start_command="npm start" if has_start else f"node {_entry_point(manifest)}",
        )
    elif has_start:
        info = ProjectInfo(
            type=ProjectType.BACKGROUND_WORKER,
            display_name="Background Worker",
            build_command="npm run build" if has_build else None,
            start_command="npm start",
        )
    else:
        info = ProjectInfo(
            type=ProjectType.GENERIC_RUNTIME,
            display_name="Node.js",
            build_command="npm run build" if has_build else None,
            start_command=f"node {_entry_point(manifest)}",
        )

    info.description = description or f"{info.display_name} application"
    info.default_port = DEFAULT_PORTS[info.type]
    info.has_manifest = True
    info.package = package
    # Dev dependencies are needed when something has to be built
    info.install_command = "npm install" if info.build_command else "npm install --production"
    return info


def resolve_launch_command(source_dir: Path, info: ProjectInfo, port: int) -> List[str]:
    """Argument vector used to run a deployed application."""
    source_dir = Path(source_dir)
    if info.type == ProjectType.STATIC_SITE:
        return [sys.executable, "-m", "http.server", str(port), "--bind", "127.0.0.1"]

    manifest = read_manifest(source_dir)
    if manifest is not None and "start" in _mapping(manifest.get("scripts")):
        return ["npm", "start"]
    if info.start_command and info.start_command != "npm start":
        return info.start_command.split()
    entry = _entry_point(manifest) if manifest is not None else "index.js"
    return ["node", entry]


def build_process_manifest(
    name: str,
    source_dir: Path,
    port: int,
    info: ProjectInfo,
    logs_dir: Path,
) -> Dict[str, Any]:
    """Process-manager style description of how the application is run."""
    env = {"NODE_ENV": "production", "PORT": str(port)}
    return {
        "name": name,
        "command": resolve_launch_command(source_dir, info, port),
        "cwd": str(source_dir),
        "env": env,
        "out_file": str(Path(logs_dir) / "out.log"),
        "error_file": str(Path(logs_dir) / "error.log"),
        "autorestart": False,
        "max_memory_restart": "500M",
    }
