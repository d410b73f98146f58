"""Error kinds surfaced by the hosting core."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    NAME_CONFLICT = "name_conflict"
    NO_PORT_AVAILABLE = "no_port_available"
    ACQUISITION_FAILURE = "acquisition_failure"
    NOT_FOUND = "not_found"
    QUOTA_EXCEEDED = "quota_exceeded"
    START_FAILURE = "start_failure"


# HTTP status used by the API layer for each kind
HTTP_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.NAME_CONFLICT: 409,
    ErrorKind.NO_PORT_AVAILABLE: 503,
    ErrorKind.ACQUISITION_FAILURE: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.QUOTA_EXCEEDED: 403,
    ErrorKind.START_FAILURE: 500,
}


class HostcoreError(Exception):
    """Base class for failures returned to the caller as structured errors."""

    kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, "kind": self.kind.value}


class InvalidInput(HostcoreError):
    kind = ErrorKind.INVALID_INPUT


class NameConflict(HostcoreError):
    kind = ErrorKind.NAME_CONFLICT


class NoPortAvailable(HostcoreError):
    kind = ErrorKind.NO_PORT_AVAILABLE


class AcquisitionFailure(HostcoreError):
    kind = ErrorKind.ACQUISITION_FAILURE


class NotFound(HostcoreError):
    kind = ErrorKind.NOT_FOUND


class QuotaExceeded(HostcoreError):
    kind = ErrorKind.QUOTA_EXCEEDED


class StartFailure(HostcoreError):
    kind = ErrorKind.START_FAILURE
