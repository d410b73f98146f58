"""Application record model."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class AppStatus(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class SourceKind(str, Enum):
    GIT = "git"
    ARCHIVE = "archive"


@dataclass
class ApplicationRecord:
    """Durable descriptor of one deployed application."""
    name: str
    port: int
    domain: str
    project_type: str
    source_directory: str
    root_directory: str
    source: str = SourceKind.GIT.value
    repo_url: Optional[str] = None
    project_info: Dict[str, Any] = field(default_factory=dict)
    owner: Optional[str] = None
    status: str = AppStatus.STOPPED.value
    pid: Optional[int] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def is_running(self) -> bool:
        return self.status == AppStatus.RUNNING.value

    @property
    def root_path(self) -> Path:
        return Path(self.root_directory)

    @property
    def source_path(self) -> Path:
        return Path(self.source_directory)

    @property
    def logs_path(self) -> Path:
        return self.root_path / "logs"

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "port": self.port,
            "domain": self.domain,
            "project_type": self.project_type,
            "project_info": dict(self.project_info),
            "source": self.source,
            "repo_url": self.repo_url,
            "source_directory": self.source_directory,
            "root_directory": self.root_directory,
            "owner": self.owner,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.pid is not None:
            data["pid"] = self.pid
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApplicationRecord":
        return cls(
            id=data.get("id") or uuid.uuid4().hex,
            name=data["name"],
            port=int(data["port"]),
            domain=data.get("domain", ""),
            project_type=data.get("project_type", "unknown"),
            project_info=dict(data.get("project_info") or {}),
            source=data.get("source", SourceKind.GIT.value),
            repo_url=data.get("repo_url"),
            source_directory=data.get("source_directory", ""),
            root_directory=data.get("root_directory", ""),
            owner=data.get("owner"),
            status=data.get("status", AppStatus.STOPPED.value),
            pid=data.get("pid"),
            created_at=data.get("created_at") or utcnow_iso(),
            updated_at=data.get("updated_at") or utcnow_iso(),
        )
