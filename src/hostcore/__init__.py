"""hostcore – deployment and process orchestration for self-hosted web apps"""

__version__ = "0.1.0"

from .config import HostcoreConfig, load_config
from .errors import (
    AcquisitionFailure,
    ErrorKind,
    HostcoreError,
    InvalidInput,
    NameConflict,
    NoPortAvailable,
    NotFound,
    QuotaExceeded,
    StartFailure,
)
from .models import AppStatus, ApplicationRecord
from .network import PortAllocator, check_port
from .platform import build_app_domain, normalize_app_name, validate_remote_reference
from .detector import ProjectInfo, ProjectType, detect_project
from .routes import RouteConfigWriter, RouteOptions, generate_route_config
from .store import APPLICATIONS, JsonRecordStore, RecordStore
from .events import Event, EventStore, EventType
from .supervisor import ProcessSupervisor
from .shell import CommandPolicy, ShellSession
from .security import AnomalyLogger, QuotaUsage, StoreQuotaOracle, UserProfile, UserTier
from .deployer import Deployer, DeployResult, DeployStage

__all__ = [
    # Configuration
    "HostcoreConfig",
    "load_config",
    # Errors
    "ErrorKind",
    "HostcoreError",
    "InvalidInput",
    "NameConflict",
    "NoPortAvailable",
    "AcquisitionFailure",
    "NotFound",
    "QuotaExceeded",
    "StartFailure",
    # Records
    "AppStatus",
    "ApplicationRecord",
    "APPLICATIONS",
    "RecordStore",
    "JsonRecordStore",
    # Ports, names and routes
    "PortAllocator",
    "check_port",
    "normalize_app_name",
    "validate_remote_reference",
    "build_app_domain",
    "RouteOptions",
    "RouteConfigWriter",
    "generate_route_config",
    # Detection
    "ProjectInfo",
    "ProjectType",
    "detect_project",
    # Supervision and shell
    "Event",
    "EventStore",
    "EventType",
    "ProcessSupervisor",
    "CommandPolicy",
    "ShellSession",
    # Quotas
    "AnomalyLogger",
    "QuotaUsage",
    "StoreQuotaOracle",
    "UserProfile",
    "UserTier",
    # Pipeline
    "Deployer",
    "DeployResult",
    "DeployStage",
    "__version__",
]
